"""
Cryptographic primitives for field encryption.

This module provides:
- KeyTemplate: Key size and primitive family for a DEK algorithm
- Cryptor: Algorithm-selected encrypt/decrypt over raw DEK bytes
- AesGcmAead: Randomized AES-GCM authenticated encryption
- AesSivDeterministicAead: Deterministic AES-SIV authenticated encryption
- EncryptedData: AES-GCM payload with nonce and ciphertext
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, AESSIV

from .errors import CryptoError, UnsupportedError

# DEK algorithm identifiers
AES128_GCM: str = "AES128_GCM"
AES256_GCM: str = "AES256_GCM"
AES256_SIV: str = "AES256_SIV"

DEFAULT_ALGORITHM: str = AES256_GCM

# Cryptographic constants
AES_128_KEY_SIZE: int = 16
AES_256_KEY_SIZE: int = 32
AES_SIV_KEY_SIZE: int = 64  # two AES-256 keys (MAC + CTR)
NONCE_SIZE: int = 12  # 96 bits (standard for AES-GCM)
TAG_SIZE: int = 16  # 128 bits (authentication tag, also the SIV length)


@dataclass(frozen=True)
class KeyTemplate:
    """Describes how to generate and use a DEK for one algorithm."""

    type_url: str
    key_size: int
    deterministic: bool = False


_KEY_TEMPLATES: Dict[str, KeyTemplate] = {
    AES128_GCM: KeyTemplate("type.googleapis.com/google.crypto.tink.AesGcmKey", AES_128_KEY_SIZE),
    AES256_GCM: KeyTemplate("type.googleapis.com/google.crypto.tink.AesGcmKey", AES_256_KEY_SIZE),
    AES256_SIV: KeyTemplate(
        "type.googleapis.com/google.crypto.tink.AesSivKey", AES_SIV_KEY_SIZE, deterministic=True
    ),
}


def key_template_for(algorithm: str) -> Optional[KeyTemplate]:
    """Return the key template for an algorithm, or None if unsupported."""
    return _KEY_TEMPLATES.get(algorithm)


@dataclass
class EncryptedData:
    """
    Encrypted data container with nonce and ciphertext.

    The ciphertext includes the 16-byte authentication tag appended by AESGCM.
    """

    nonce: bytes  # 12 bytes
    ciphertext: bytes  # Ciphertext + 16-byte auth tag

    def to_aead_blob(self) -> bytes:
        """Convert to AEAD blob format: nonce || ciphertext || tag."""
        return self.nonce + self.ciphertext

    @classmethod
    def from_aead_blob(cls, blob: bytes) -> EncryptedData:
        """
        Parse from AEAD blob format: nonce || ciphertext || tag.

        Raises:
            CryptoError: If blob is too small
        """
        min_size = NONCE_SIZE + TAG_SIZE
        if len(blob) < min_size:
            raise CryptoError(
                f"AEAD blob too small: expected at least {min_size} bytes, got {len(blob)}"
            )
        return cls(nonce=blob[:NONCE_SIZE], ciphertext=blob[NONCE_SIZE:])


class AesGcmAead:
    """
    AES-GCM authenticated encryption bound to a single key.

    Output format is nonce || ciphertext || tag with a fresh random nonce
    per call, so equal plaintexts produce different ciphertexts.
    """

    __slots__ = ("_aesgcm",)

    def __init__(self, key: bytes) -> None:
        if len(key) not in (AES_128_KEY_SIZE, AES_256_KEY_SIZE):
            raise CryptoError(
                f"Invalid key size: expected {AES_128_KEY_SIZE} or {AES_256_KEY_SIZE}, got {len(key)}"
            )
        self._aesgcm = AESGCM(bytes(key))

    def encrypt(self, plaintext: bytes, associated_data: bytes = b"") -> bytes:
        nonce = secrets.token_bytes(NONCE_SIZE)
        try:
            ciphertext = self._aesgcm.encrypt(nonce, plaintext, associated_data or None)
        except Exception as e:
            raise CryptoError(f"Encryption error: {e}") from e
        return EncryptedData(nonce=nonce, ciphertext=ciphertext).to_aead_blob()

    def decrypt(self, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
        encrypted = EncryptedData.from_aead_blob(ciphertext)
        try:
            return self._aesgcm.decrypt(
                encrypted.nonce, encrypted.ciphertext, associated_data or None
            )
        except InvalidTag:
            # Generic error to prevent oracle attacks
            raise CryptoError("Decryption failed") from None

    def __repr__(self) -> str:
        return "AesGcmAead([REDACTED])"


class AesSivDeterministicAead:
    """
    AES-SIV deterministic authenticated encryption (RFC 5297).

    Output format is siv || ciphertext. The same plaintext and associated
    data always encrypt to the same bytes.
    """

    __slots__ = ("_aessiv",)

    def __init__(self, key: bytes) -> None:
        if len(key) != AES_SIV_KEY_SIZE:
            raise CryptoError(
                f"Invalid key size: expected {AES_SIV_KEY_SIZE}, got {len(key)}"
            )
        self._aessiv = AESSIV(bytes(key))

    def encrypt_deterministically(self, plaintext: bytes, associated_data: bytes = b"") -> bytes:
        try:
            return self._aessiv.encrypt(plaintext, [associated_data] if associated_data else None)
        except Exception as e:
            raise CryptoError(f"Encryption error: {e}") from e

    def decrypt_deterministically(self, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
        if len(ciphertext) < TAG_SIZE:
            raise CryptoError("Decryption failed")
        try:
            return self._aessiv.decrypt(ciphertext, [associated_data] if associated_data else None)
        except InvalidTag:
            raise CryptoError("Decryption failed") from None

    def __repr__(self) -> str:
        return "AesSivDeterministicAead([REDACTED])"


@dataclass(frozen=True)
class Cryptor:
    """
    Selects the DEK primitive family from an algorithm identifier.

    AES256_SIV uses deterministic encryption so encrypted fields stay
    comparable for equality; every other algorithm is randomized AEAD.
    """

    dek_format: str
    key_template: Optional[KeyTemplate]

    @classmethod
    def for_algorithm(cls, algorithm: Optional[str] = None) -> Cryptor:
        dek_format = algorithm or DEFAULT_ALGORITHM
        return cls(dek_format=dek_format, key_template=key_template_for(dek_format))

    def _require_template(self) -> KeyTemplate:
        if self.key_template is None:
            raise UnsupportedError(f"unsupported dek algorithm: {self.dek_format}")
        return self.key_template

    def generate_key(self) -> bytes:
        """Generate raw key material for this algorithm."""
        return generate_random_bytes(self._require_template().key_size)

    def encrypt(self, dek: bytes, plaintext: bytes, associated_data: bytes = b"") -> bytes:
        if self._require_template().deterministic:
            return AesSivDeterministicAead(dek).encrypt_deterministically(plaintext, associated_data)
        return AesGcmAead(dek).encrypt(plaintext, associated_data)

    def decrypt(self, dek: bytes, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
        if self._require_template().deterministic:
            return AesSivDeterministicAead(dek).decrypt_deterministically(ciphertext, associated_data)
        return AesGcmAead(dek).decrypt(ciphertext, associated_data)


def generate_random_bytes(length: int) -> bytes:
    """
    Generate cryptographically secure random bytes.

    Args:
        length: Number of bytes to generate

    Returns:
        Random bytes of specified length
    """
    return secrets.token_bytes(length)
