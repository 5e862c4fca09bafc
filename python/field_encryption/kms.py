"""
KMS driver registry.

Drivers claim a URL prefix (``local-kms://``, ``aws-kms://`` ...) and build
clients; clients hand out an Aead over the master key a KEK points at.

Both tables are process-wide. Drivers register once at startup, before any
transform runs. Clients are constructed lazily, one per master-key URL, and
construction is single-flight per URL so concurrent first use never
publishes two clients for the same URL.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional, Protocol

from .errors import EncryptionError, KmsError

logger = logging.getLogger(__name__)


class Aead(Protocol):
    """Authenticated encryption handle over a master key."""

    def encrypt(self, plaintext: bytes, associated_data: bytes = b"") -> bytes:
        ...

    def decrypt(self, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
        ...


class KmsClient(ABC):
    """Client for one KMS, able to wrap/unwrap with the keys it serves."""

    @abstractmethod
    def does_support(self, key_url: str) -> bool:
        """Return True if this client can serve the given key URL."""
        ...

    @abstractmethod
    def get_aead(self, key_url: str) -> Aead:
        """Return an Aead backed by the master key at key_url."""
        ...


class KmsDriver(ABC):
    """Factory for KMS clients, selected by URL prefix."""

    @abstractmethod
    def get_key_url_prefix(self) -> str:
        """URL prefix claimed by this driver, e.g. ``local-kms://``."""
        ...

    @abstractmethod
    def new_kms_client(self, config: Mapping[str, str], key_url: Optional[str]) -> KmsClient:
        """Build a client for key_url using the executor configuration."""
        ...


def kek_url(kms_type: str, kms_key_id: str) -> str:
    """Master-key URL for a KEK."""
    return f"{kms_type}://{kms_key_id}"


class KmsRegistry:
    """
    Process-scoped tables of KMS drivers and constructed clients.

    Clients are cached by exact master-key URL. The first client published
    for a URL serves every later caller, whatever configuration they pass.
    """

    def __init__(self) -> None:
        self._drivers: Dict[str, KmsDriver] = {}
        self._clients: Dict[str, KmsClient] = {}
        self._url_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def register_driver(self, driver: KmsDriver) -> None:
        prefix = driver.get_key_url_prefix()
        with self._lock:
            self._drivers[prefix] = driver
        logger.info("Registered KMS driver for %s", prefix)

    def has_driver(self, prefix: str) -> bool:
        with self._lock:
            return prefix in self._drivers

    def get_driver(self, key_url: str) -> KmsDriver:
        """
        Resolve the driver whose prefix is the longest match for key_url.

        Raises:
            KmsError: If no registered driver claims the URL
        """
        with self._lock:
            matches = [p for p in self._drivers if key_url.startswith(p)]
            if not matches:
                raise KmsError(f"no KMS driver found for key URL: {key_url}")
            return self._drivers[max(matches, key=len)]

    def register_client(self, key_url: str, client: KmsClient) -> KmsClient:
        """Publish a client for key_url unless one is already there; return the live one."""
        with self._lock:
            existing = self._clients.get(key_url)
            if existing is not None:
                return existing
            self._clients[key_url] = client
            return client

    def get_client(self, key_url: str) -> Optional[KmsClient]:
        with self._lock:
            return self._clients.get(key_url)

    def get_or_create_client(
        self, driver: KmsDriver, config: Mapping[str, str], key_url: str
    ) -> KmsClient:
        client = self.get_client(key_url)
        if client is not None:
            logger.debug("Using cached KMS client for %s", key_url)
            return client

        with self._lock:
            url_lock = self._url_locks.setdefault(key_url, threading.Lock())

        with url_lock:
            client = self.get_client(key_url)
            if client is not None:
                return client
            try:
                created = driver.new_kms_client(config, key_url)
            except EncryptionError:
                raise
            except Exception as e:
                raise KmsError(f"failed to create KMS client for {key_url}: {e}") from e
            logger.debug("Created KMS client for %s", key_url)
            return self.register_client(key_url, created)

    def clear_drivers(self) -> None:
        with self._lock:
            self._drivers.clear()

    def clear_clients(self) -> None:
        with self._lock:
            self._clients.clear()
            self._url_locks.clear()


_registry = KmsRegistry()


def register_kms_driver(driver: KmsDriver) -> None:
    _registry.register_driver(driver)


def get_kms_driver(key_url: str) -> KmsDriver:
    return _registry.get_driver(key_url)


def is_kms_driver_registered(prefix: str) -> bool:
    return _registry.has_driver(prefix)


def register_kms_client(key_url: str, client: KmsClient) -> KmsClient:
    return _registry.register_client(key_url, client)


def get_kms_client(key_url: str) -> Optional[KmsClient]:
    return _registry.get_client(key_url)


def get_or_create_kms_client(
    driver: KmsDriver, config: Mapping[str, str], key_url: str
) -> KmsClient:
    return _registry.get_or_create_client(driver, config, key_url)


def clear_kms_drivers() -> None:
    _registry.clear_drivers()


def clear_kms_clients() -> None:
    _registry.clear_clients()


def get_aead(config: Mapping[str, str], kms_type: str, kms_key_id: str) -> Aead:
    """
    Resolve the Aead for a KEK's master key.

    Raises:
        KmsError: If no driver claims the URL or the client rejects it
    """
    url = kek_url(kms_type, kms_key_id)
    driver = get_kms_driver(url)
    client = get_or_create_kms_client(driver, config, url)
    if not client.does_support(url):
        raise KmsError(f"KMS client does not support key URL: {url}")
    return client.get_aead(url)
