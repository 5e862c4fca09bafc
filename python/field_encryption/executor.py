"""
Encryption rule executors.

This module provides:
- Executor: Encrypts or decrypts a whole payload (rule type ENCRYPT_PAYLOAD)
- FieldEncryptionExecutor: Encrypts or decrypts tagged fields (rule type ENCRYPT)
- ExecutorTransform: Single-use transform binding one rule invocation to its KEK

Write path: field value -> bytes -> DEK encrypt -> [version frame] -> base64 for strings
Read path: reverse of the above, using the DEK version found in the frame
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import Any, Dict, Mapping, Optional

from .clock import Clock, SystemClock
from .crypto import Cryptor
from .errors import ConfigError, SerializationError, UnsupportedError
from .framing import extract_version, prefix_version
from .key_manager import KeyManager
from .registry import LATEST_VERSION, DekRegistryClient, Kek, new_dek_registry_client
from .rules import FieldType, RuleContext, RuleExecutor, RuleMode, register_rule_executor

# Rule parameters
ENCRYPT_KEK_NAME: str = "encrypt.kek.name"
ENCRYPT_KMS_KEY_ID: str = "encrypt.kms.key.id"
ENCRYPT_KMS_TYPE: str = "encrypt.kms.type"
ENCRYPT_DEK_ALGORITHM: str = "encrypt.dek.algorithm"
ENCRYPT_DEK_EXPIRY_DAYS: str = "encrypt.dek.expiry.days"

_INTEGER = re.compile(r"[+-]?[0-9]+")

PAYLOAD_RULE_TYPE: str = "ENCRYPT_PAYLOAD"
FIELD_RULE_TYPE: str = "ENCRYPT"


class Executor(RuleExecutor):
    """
    Payload encryption executor.

    Configure once before the first transform; the configuration map is
    read-only afterwards and may be shared by concurrent transforms.
    """

    def __init__(
        self, client: Optional[DekRegistryClient] = None, clock: Optional[Clock] = None
    ) -> None:
        """
        Args:
            client: Registry client; built from client config on configure if omitted
            clock: Clock for DEK expiry, defaults to the system clock
        """
        self.client = client
        self.clock: Clock = clock or SystemClock()
        self.config: Dict[str, str] = {}

    def configure(
        self, client_config: Mapping[str, str], config: Optional[Mapping[str, str]] = None
    ) -> None:
        """
        Attach the registry client and merge rule configuration.

        Raises:
            ConfigError: If the executor was configured with a different client
                config, or a config key is already set to a different value
        """
        client_config = dict(client_config)
        if self.client is not None:
            if dict(self.client.config) != client_config:
                raise ConfigError("executor already configured")
        else:
            self.client = new_dek_registry_client(client_config, self.clock)

        for key, value in (config or {}).items():
            existing = self.config.get(key)
            if existing is None:
                self.config[key] = value
            elif existing != value:
                raise ConfigError(f"rule config key already set: {key}")

    def type(self) -> str:
        return PAYLOAD_RULE_TYPE

    def transform(self, ctx: RuleContext, message: Any) -> Any:
        return self.new_transform(ctx).transform(ctx, FieldType.BYTES, message)

    def new_transform(self, ctx: RuleContext) -> ExecutorTransform:
        """
        Build a transform for one rule invocation and resolve its KEK.

        Raises:
            ConfigError: If rule parameters are missing or invalid
        """
        if self.client is None:
            raise ConfigError("executor not configured")
        kek_name = get_kek_name(ctx)
        dek_expiry_days = get_dek_expiry_days(ctx)
        key_manager = KeyManager(
            client=self.client,
            kms_config=self.config,
            clock=self.clock,
            kek_name=kek_name,
            cryptor=get_cryptor(ctx),
            dek_expiry_days=dek_expiry_days,
        )
        key_manager.get_or_create_kek(
            ctx.get_parameter(ENCRYPT_KMS_TYPE),
            ctx.get_parameter(ENCRYPT_KMS_KEY_ID),
            read_mode=ctx.rule_mode == RuleMode.READ,
        )
        return ExecutorTransform(key_manager)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


class FieldEncryptionExecutor(Executor):
    """Field encryption executor; the framework walks the message for it."""

    def type(self) -> str:
        return FIELD_RULE_TYPE

    def transform(self, ctx: RuleContext, message: Any) -> Any:
        if ctx.field_transformer is None:
            raise UnsupportedError("field encryption requires a field transformer")
        return ctx.field_transformer(ctx, self.new_transform(ctx), message)


class ExecutorTransform:
    """Encrypts or decrypts one field value under a resolved KEK."""

    def __init__(self, key_manager: KeyManager) -> None:
        self._key_manager = key_manager

    @property
    def kek(self) -> Optional[Kek]:
        return self._key_manager.kek

    @property
    def key_manager(self) -> KeyManager:
        return self._key_manager

    def transform(self, ctx: RuleContext, field_type: FieldType, field_value: Any) -> Any:
        """
        Encrypt on WRITE, decrypt on READ.

        Raises:
            UnsupportedError: If the rule mode is unknown, or on write the
                field type cannot be encrypted
            SerializationError: If a read value is not valid base64 or framing
        """
        if field_value is None:
            return None
        if ctx.rule_mode == RuleMode.WRITE:
            return self._encrypt(ctx, field_type, field_value)
        if ctx.rule_mode == RuleMode.READ:
            return self._decrypt(ctx, field_type, field_value)
        raise UnsupportedError(f"unsupported rule mode {ctx.rule_mode}")

    def _encrypt(self, ctx: RuleContext, field_type: FieldType, field_value: Any) -> Any:
        plaintext = _to_bytes(field_type, field_value)
        if plaintext is None:
            raise UnsupportedError(f"type '{field_type}' not supported for encryption")
        km = self._key_manager
        rotated = km.is_dek_rotated()
        dek = km.get_or_create_dek(
            ctx.subject, LATEST_VERSION if rotated else None, read_mode=False
        )
        ciphertext = km.cryptor.encrypt(dek.key_material_bytes(), plaintext, b"")
        if rotated:
            ciphertext = prefix_version(dek.version, ciphertext)
        if field_type == FieldType.STRING:
            return base64.standard_b64encode(ciphertext).decode("ascii")
        return ciphertext

    def _decrypt(self, ctx: RuleContext, field_type: FieldType, field_value: Any) -> Any:
        ciphertext = _to_bytes(field_type, field_value)
        if ciphertext is None:
            return field_value
        if field_type == FieldType.STRING:
            try:
                ciphertext = base64.b64decode(ciphertext, validate=True)
            except (binascii.Error, ValueError) as e:
                raise SerializationError(f"Base64 decode error: {e}") from e
        km = self._key_manager
        version: Optional[int] = None
        if km.is_dek_rotated():
            version, ciphertext = extract_version(ciphertext)
        dek = km.get_or_create_dek(ctx.subject, version, read_mode=True)
        plaintext = km.cryptor.decrypt(dek.key_material_bytes(), ciphertext, b"")
        return _to_object(field_type, plaintext)


def _to_bytes(field_type: FieldType, value: Any) -> Optional[bytes]:
    if field_type == FieldType.BYTES and isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if field_type == FieldType.STRING and isinstance(value, str):
        return value.encode("utf-8")
    return None


def _to_object(field_type: FieldType, value: bytes) -> Any:
    if field_type == FieldType.STRING:
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SerializationError(f"decrypted value is not valid UTF-8: {e}") from e
    return value


def get_kek_name(ctx: RuleContext) -> str:
    kek_name = ctx.get_parameter(ENCRYPT_KEK_NAME)
    if kek_name is None:
        raise ConfigError("no kek name found")
    if not kek_name:
        raise ConfigError("empty kek name")
    return kek_name


def get_dek_expiry_days(ctx: RuleContext) -> int:
    value = ctx.get_parameter(ENCRYPT_DEK_EXPIRY_DAYS)
    if value is None:
        return 0
    if not _INTEGER.fullmatch(value):
        raise ConfigError(f"invalid value for {ENCRYPT_DEK_EXPIRY_DAYS}: {value}")
    days = int(value)
    if days < 0:
        raise ConfigError(f"invalid value for {ENCRYPT_DEK_EXPIRY_DAYS}: {value}")
    return days


def get_cryptor(ctx: RuleContext) -> Cryptor:
    return Cryptor.for_algorithm(ctx.get_parameter(ENCRYPT_DEK_ALGORITHM))


def register() -> None:
    """Register the payload and field encryption executors."""
    register_rule_executor(Executor())
    register_rule_executor(FieldEncryptionExecutor())


def register_executor_with_clock(clock: Clock) -> Executor:
    """Register a payload executor driven by the given clock and return it."""
    executor = Executor(clock=clock)
    register_rule_executor(executor)
    return executor
