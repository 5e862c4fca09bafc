"""
Local KMS driver for development and testing.

WARNING: the master key is derived from a shared secret held in process
configuration. Use a real KMS in production.

The secret comes from the ``secret`` executor config key, falling back to
the ``LOCAL_SECRET`` environment variable.
"""

from __future__ import annotations

import logging
import os
from typing import Mapping, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .crypto import AES_128_KEY_SIZE, AesGcmAead
from .errors import ConfigError
from .kms import Aead, KmsClient, KmsDriver, is_kms_driver_registered, register_kms_driver

logger = logging.getLogger(__name__)

LOCAL_KMS_PREFIX: str = "local-kms://"
SECRET_CONFIG_KEY: str = "secret"
SECRET_ENV_VAR: str = "LOCAL_SECRET"


def derive_master_key(secret: str) -> bytes:
    """Derive a 128-bit AES-GCM key from the secret with HKDF-SHA256."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=AES_128_KEY_SIZE,
        salt=None,
        info=None,
    )
    return hkdf.derive(secret.encode("utf-8"))


class LocalKmsClient(KmsClient):
    """Serves every local-kms:// URL with one secret-derived master key."""

    def __init__(self, secret: str) -> None:
        self._aead = AesGcmAead(derive_master_key(secret))

    def does_support(self, key_url: str) -> bool:
        return key_url.startswith(LOCAL_KMS_PREFIX)

    def get_aead(self, key_url: str) -> Aead:
        return self._aead


class LocalKmsDriver(KmsDriver):
    def get_key_url_prefix(self) -> str:
        return LOCAL_KMS_PREFIX

    def new_kms_client(self, config: Mapping[str, str], key_url: Optional[str]) -> KmsClient:
        secret = config.get(SECRET_CONFIG_KEY) or os.environ.get(SECRET_ENV_VAR)
        if not secret:
            raise ConfigError(
                f"cannot load secret for local KMS: set '{SECRET_CONFIG_KEY}' or {SECRET_ENV_VAR}"
            )
        return LocalKmsClient(secret)


def register_local_kms_driver() -> None:
    """Register the local KMS driver once."""
    if not is_kms_driver_registered(LOCAL_KMS_PREFIX):
        register_kms_driver(LocalKmsDriver())
