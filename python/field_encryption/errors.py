"""
Exception classes for field encryption operations.

Registry clients raise RestError; everything else raised by this package
derives from EncryptionError as well.
"""

from __future__ import annotations


class EncryptionError(Exception):
    """Base exception for all field encryption operations."""

    pass


class ConfigError(EncryptionError):
    """Missing or invalid rule parameters, or conflicting executor configuration."""

    pass


class CryptoError(EncryptionError):
    """Cryptographic operation failed (encryption, decryption, key generation)."""

    pass


class KeyNotFoundError(EncryptionError):
    """KEK or DEK not found in the registry."""

    pass


class InvalidKeyStateError(EncryptionError):
    """Registered key does not match the rule that references it."""

    pass


class SerializationError(EncryptionError):
    """Malformed ciphertext framing or encoding."""

    pass


class UnsupportedError(EncryptionError):
    """Unknown algorithm, field type or rule mode."""

    pass


class KmsError(EncryptionError):
    """KMS driver lookup or client construction failed."""

    pass


class RestError(EncryptionError):
    """Error returned by the key registry, carrying an HTTP-like status code."""

    def __init__(self, code: int, message: str = "") -> None:
        super().__init__(f"{code}: {message}" if message else str(code))
        self.code = code
        self.message = message

    def is_not_found(self) -> bool:
        return str(self.code).startswith("404")

    def is_conflict(self) -> bool:
        return str(self.code).startswith("409")
