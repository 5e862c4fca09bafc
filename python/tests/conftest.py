"""
Pytest configuration and fixtures for field encryption tests.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional

import pytest
from dotenv import load_dotenv

from field_encryption import (
    ENCRYPT_KEK_NAME,
    ENCRYPT_KMS_KEY_ID,
    ENCRYPT_KMS_TYPE,
    Aead,
    AesGcmAead,
    FieldEncryptionExecutor,
    InMemoryDekRegistryClient,
    KmsClient,
    KmsDriver,
    register_kms_driver,
)
from field_encryption.kms import clear_kms_clients, clear_kms_drivers
from field_encryption.local_kms import derive_master_key
from field_encryption.registry import clear_mock_clients
from field_encryption.rules import clear_rule_executors

START_MILLIS = 1_700_000_000_000


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: int = START_MILLIS) -> None:
        self.now = now

    def now_unix_millis(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


class FakeKmsClient(KmsClient):
    """One AES-GCM master key per key URL, derived from the URL itself."""

    def __init__(self, prefix: str) -> None:
        self._prefix = prefix
        self.aead_requests: List[str] = []

    def does_support(self, key_url: str) -> bool:
        return key_url.startswith(self._prefix)

    def get_aead(self, key_url: str) -> Aead:
        self.aead_requests.append(key_url)
        return AesGcmAead(derive_master_key(key_url))


class FakeKmsDriver(KmsDriver):
    """Driver for ``fake://`` URLs that records every client it builds."""

    def __init__(self, prefix: str = "fake://") -> None:
        self.prefix = prefix
        self.clients: List[FakeKmsClient] = []
        self._lock = threading.Lock()

    def get_key_url_prefix(self) -> str:
        return self.prefix

    def new_kms_client(self, config: Mapping[str, str], key_url: Optional[str]) -> KmsClient:
        client = FakeKmsClient(self.prefix)
        with self._lock:
            self.clients.append(client)
        return client


@pytest.fixture(autouse=True)
def reset_process_state() -> Iterator[None]:
    """Start every test with empty process-wide tables."""
    clear_kms_drivers()
    clear_kms_clients()
    clear_mock_clients()
    clear_rule_executors()
    yield
    clear_kms_drivers()
    clear_kms_clients()
    clear_mock_clients()
    clear_rule_executors()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_kms() -> FakeKmsDriver:
    """Register and return the fake KMS driver."""
    driver = FakeKmsDriver()
    register_kms_driver(driver)
    return driver


@pytest.fixture
def memory_registry(clock: FakeClock) -> InMemoryDekRegistryClient:
    """Create an in-memory registry client stamped by the fake clock."""
    return InMemoryDekRegistryClient({"url": "mock://test"}, clock)


@pytest.fixture
def executor(
    memory_registry: InMemoryDekRegistryClient, clock: FakeClock, fake_kms: FakeKmsDriver
) -> FieldEncryptionExecutor:
    """Field executor over the in-memory registry and fake KMS."""
    field_executor = FieldEncryptionExecutor(client=memory_registry, clock=clock)
    field_executor.configure({"url": "mock://test"})
    return field_executor


@pytest.fixture
def rule_params() -> Dict[str, str]:
    return {
        ENCRYPT_KEK_NAME: "kek1",
        ENCRYPT_KMS_TYPE: "fake",
        ENCRYPT_KMS_KEY_ID: "id1",
    }


@pytest.fixture
def local_secret(monkeypatch: pytest.MonkeyPatch) -> str:
    """Secret for the local KMS, from the project .env file if present."""
    env_path = Path(__file__).parent.parent.parent / ".env"
    load_dotenv(env_path)
    secret = os.environ.get("LOCAL_SECRET") or "field-encryption-test-secret"
    monkeypatch.setenv("LOCAL_SECRET", secret)
    return secret
