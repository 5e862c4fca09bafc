"""
Key registry client interface and records.

This module provides:
- Kek / Dek: Registry records for key-encryption and data-encryption keys
- KekId / DekId: Lookup identities
- DekRegistryClient: Abstract client the key lifecycle manager talks to
- InMemoryDekRegistryClient: Thread-safe in-memory registry for testing

Clients signal "not found" and "conflict" by raising RestError with a 404
or 409 code. Other codes are failures.
"""

from __future__ import annotations

import base64
import binascii
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Tuple

from .clock import Clock, SystemClock
from .crypto import Cryptor
from .errors import ConfigError, RestError, SerializationError

logger = logging.getLogger(__name__)

LATEST_VERSION: int = -1
MOCK_URL_PREFIX: str = "mock://"


@dataclass(frozen=True)
class KekId:
    name: str
    deleted: bool = False


@dataclass
class Kek:
    """Key-encryption-key record. Immutable once registered, apart from soft delete."""

    name: str
    kms_type: str
    kms_key_id: str
    kms_props: Dict[str, str] = field(default_factory=dict)
    doc: str = ""
    shared: bool = False
    ts: int = 0
    deleted: bool = False


@dataclass(frozen=True)
class DekId:
    kek_name: str
    subject: str
    version: int
    algorithm: str
    deleted: bool = False


@dataclass
class Dek:
    """
    Data-encryption-key record.

    ``encrypted_key_material`` and ``key_material`` are base64 strings as
    the registry returns them. Raw key bytes are cached on the instance
    after unwrapping and never sent back to the registry.
    """

    kek_name: str
    subject: str
    version: int
    algorithm: str
    encrypted_key_material: Optional[str] = None
    key_material: Optional[str] = field(default=None, repr=False)
    ts: int = 0
    deleted: bool = False
    _key_material_bytes: Optional[bytes] = field(default=None, repr=False, compare=False)

    def key_material_bytes(self) -> Optional[bytes]:
        """Raw key bytes, or None if the DEK has not been unwrapped."""
        if self._key_material_bytes is None and self.key_material:
            self._key_material_bytes = _b64decode(self.key_material)
        return self._key_material_bytes

    def encrypted_key_material_bytes(self) -> Optional[bytes]:
        if not self.encrypted_key_material:
            return None
        return _b64decode(self.encrypted_key_material)

    def set_key_material(self, raw: bytes) -> None:
        self._key_material_bytes = bytes(raw)
        self.key_material = base64.standard_b64encode(raw).decode("ascii")


def _b64decode(value: str) -> bytes:
    try:
        return base64.standard_b64decode(value)
    except (binascii.Error, ValueError) as e:
        raise SerializationError(f"Base64 decode error: {e}") from e


class DekRegistryClient(ABC):
    """
    Abstract client for the KEK/DEK registry.

    Every lookup and registration is a synchronous remote call.
    """

    @property
    @abstractmethod
    def config(self) -> Mapping[str, str]:
        """Client configuration this client was built with."""
        ...

    @abstractmethod
    def get_kek(self, name: str, deleted: bool = False) -> Kek:
        ...

    @abstractmethod
    def register_kek(
        self,
        name: str,
        kms_type: str,
        kms_key_id: str,
        kms_props: Optional[Mapping[str, str]] = None,
        doc: str = "",
        shared: bool = False,
    ) -> Kek:
        ...

    @abstractmethod
    def get_dek(
        self,
        kek_name: str,
        subject: str,
        algorithm: str,
        version: int = 1,
        deleted: bool = False,
    ) -> Dek:
        """Get a DEK; version LATEST_VERSION (or 0) resolves to the newest."""
        ...

    @abstractmethod
    def register_dek(
        self,
        kek_name: str,
        subject: str,
        algorithm: str,
        version: int = 1,
        encrypted_key_material: Optional[str] = None,
    ) -> Dek:
        ...

    def close(self) -> None:
        pass


class InMemoryDekRegistryClient(DekRegistryClient):
    """
    Thread-safe in-memory registry for testing.

    Records are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(
        self, config: Optional[Mapping[str, str]] = None, clock: Optional[Clock] = None
    ) -> None:
        self._config: Dict[str, str] = dict(config or {})
        self._clock = clock or SystemClock()
        self._keks: Dict[str, Kek] = {}
        self._deks: Dict[Tuple[str, str, str, int], Dek] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> Mapping[str, str]:
        return self._config

    def get_kek(self, name: str, deleted: bool = False) -> Kek:
        with self._lock:
            kek = self._keks.get(name)
            if kek is None or (kek.deleted and not deleted):
                raise RestError(40470, f"Key '{name}' not found")
            return replace(kek, kms_props=dict(kek.kms_props))

    def register_kek(
        self,
        name: str,
        kms_type: str,
        kms_key_id: str,
        kms_props: Optional[Mapping[str, str]] = None,
        doc: str = "",
        shared: bool = False,
    ) -> Kek:
        with self._lock:
            if name in self._keks:
                raise RestError(40972, f"Key '{name}' already exists")
            kek = Kek(
                name=name,
                kms_type=kms_type,
                kms_key_id=kms_key_id,
                kms_props=dict(kms_props or {}),
                doc=doc,
                shared=shared,
                ts=self._clock.now_unix_millis(),
            )
            self._keks[name] = kek
            return replace(kek, kms_props=dict(kek.kms_props))

    def get_dek(
        self,
        kek_name: str,
        subject: str,
        algorithm: str,
        version: int = 1,
        deleted: bool = False,
    ) -> Dek:
        with self._lock:
            if version in (0, LATEST_VERSION):
                candidates = [
                    d
                    for (k, s, a, _), d in self._deks.items()
                    if (k, s, a) == (kek_name, subject, algorithm) and (deleted or not d.deleted)
                ]
                dek = max(candidates, key=lambda d: d.version) if candidates else None
            else:
                dek = self._deks.get((kek_name, subject, algorithm, version))
                if dek is not None and dek.deleted and not deleted:
                    dek = None
            if dek is None:
                raise RestError(40470, f"Key '{kek_name}' for subject '{subject}' not found")
            return replace(dek)

    def register_dek(
        self,
        kek_name: str,
        subject: str,
        algorithm: str,
        version: int = 1,
        encrypted_key_material: Optional[str] = None,
    ) -> Dek:
        with self._lock:
            kek = self._keks.get(kek_name)
            if kek is None or kek.deleted:
                raise RestError(40470, f"Key '{kek_name}' not found")
            key = (kek_name, subject, algorithm, version)
            if key in self._deks:
                raise RestError(40972, f"Key '{kek_name}' for subject '{subject}' already exists")
            dek = Dek(
                kek_name=kek_name,
                subject=subject,
                version=version,
                algorithm=algorithm,
                encrypted_key_material=encrypted_key_material or None,
                ts=self._clock.now_unix_millis(),
            )
            if kek.shared and not encrypted_key_material:
                # The KMS side owns wrapping for shared KEKs and hands back raw material
                raw = Cryptor.for_algorithm(algorithm).generate_key()
                dek.key_material = base64.standard_b64encode(raw).decode("ascii")
            self._deks[key] = dek
            return replace(dek)

    def delete_kek(self, name: str) -> None:
        """Soft-delete a KEK."""
        with self._lock:
            kek = self._keks.get(name)
            if kek is None:
                raise RestError(40470, f"Key '{name}' not found")
            kek.deleted = True

    def delete_dek(self, kek_name: str, subject: str, algorithm: str, version: int) -> None:
        """Soft-delete one DEK version."""
        with self._lock:
            dek = self._deks.get((kek_name, subject, algorithm, version))
            if dek is None:
                raise RestError(40470, f"Key '{kek_name}' for subject '{subject}' not found")
            dek.deleted = True


_mock_clients: Dict[str, InMemoryDekRegistryClient] = {}
_mock_lock = threading.Lock()


def new_dek_registry_client(
    client_config: Mapping[str, str], clock: Optional[Clock] = None
) -> DekRegistryClient:
    """
    Build a registry client from client configuration.

    ``mock://`` URLs share one in-memory registry per URL across the process.

    Raises:
        ConfigError: If the URL is missing or no client is available for it
    """
    url = client_config.get("url")
    if not url:
        raise ConfigError("registry client config requires 'url'")
    if url.startswith(MOCK_URL_PREFIX):
        with _mock_lock:
            client = _mock_clients.get(url)
            if client is None:
                client = InMemoryDekRegistryClient(client_config, clock)
                _mock_clients[url] = client
            return client
    raise ConfigError(
        f"no registry client available for {url}; pass a DekRegistryClient to the executor"
    )


def clear_mock_clients() -> None:
    with _mock_lock:
        _mock_clients.clear()
