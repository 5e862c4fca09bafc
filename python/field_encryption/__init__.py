"""
Field Encryption Library

Envelope encryption rules for serialized records: selected fields (or whole
payloads) are encrypted on write and decrypted on read with per-subject DEKs,
which are wrapped by KEKs held in a KMS and tracked in a key registry.

Quick Start
-----------
```python
from field_encryption import (
    FieldEncryptionExecutor,
    FieldType,
    RuleContext,
    RuleMode,
    register_local_kms_driver,
)

register_local_kms_driver()

executor = FieldEncryptionExecutor()
executor.configure({"url": "mock://registry"}, {"secret": "mysecret"})

params = {
    "encrypt.kek.name": "kek1",
    "encrypt.kms.type": "local-kms",
    "encrypt.kms.key.id": "mykey",
}
ctx = RuleContext(subject="orders-value", rule_mode=RuleMode.WRITE, rule_params=params)
encrypted = executor.new_transform(ctx).transform(ctx, FieldType.STRING, "hello")

ctx = RuleContext(subject="orders-value", rule_mode=RuleMode.READ, rule_params=params)
assert executor.new_transform(ctx).transform(ctx, FieldType.STRING, encrypted) == "hello"
```

Key Features
------------
- **AES-GCM / AES-SIV**: Randomized or deterministic DEK encryption
- **Lazy Key Creation**: KEKs and DEKs registered on first write
- **DEK Rotation**: Expiry-driven DEK versions, framed into the ciphertext
- **Pluggable KMS**: Drivers selected by master-key URL prefix
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto Exports
# =============================================================================

from .crypto import (
    AES128_GCM,
    AES256_GCM,
    AES256_SIV,
    DEFAULT_ALGORITHM,
    AesGcmAead,
    AesSivDeterministicAead,
    Cryptor,
    KeyTemplate,
    key_template_for,
)
from .framing import HEADER_SIZE, MAGIC_BYTE, extract_version, prefix_version

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    ConfigError,
    CryptoError,
    EncryptionError,
    InvalidKeyStateError,
    KeyNotFoundError,
    KmsError,
    RestError,
    SerializationError,
    UnsupportedError,
)

# =============================================================================
# KMS Exports
# =============================================================================

from .kms import (
    Aead,
    KmsClient,
    KmsDriver,
    get_kms_driver,
    get_or_create_kms_client,
    register_kms_driver,
)
from .local_kms import LocalKmsDriver, register_local_kms_driver

# =============================================================================
# Registry and Executor Exports (Primary API)
# =============================================================================

from .clock import MILLIS_IN_DAY, Clock, SystemClock
from .executor import (
    ENCRYPT_DEK_ALGORITHM,
    ENCRYPT_DEK_EXPIRY_DAYS,
    ENCRYPT_KEK_NAME,
    ENCRYPT_KMS_KEY_ID,
    ENCRYPT_KMS_TYPE,
    Executor,
    ExecutorTransform,
    FieldEncryptionExecutor,
    register,
    register_executor_with_clock,
)
from .key_manager import KeyManager
from .registry import (
    LATEST_VERSION,
    Dek,
    DekId,
    DekRegistryClient,
    InMemoryDekRegistryClient,
    Kek,
    KekId,
    new_dek_registry_client,
)
from .rules import FieldType, RuleContext, RuleExecutor, RuleMode, get_rule_executor

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES128_GCM",
    "AES256_GCM",
    "AES256_SIV",
    "DEFAULT_ALGORITHM",
    "AesGcmAead",
    "AesSivDeterministicAead",
    "Cryptor",
    "KeyTemplate",
    "key_template_for",
    "HEADER_SIZE",
    "MAGIC_BYTE",
    "extract_version",
    "prefix_version",
    # Errors
    "EncryptionError",
    "ConfigError",
    "CryptoError",
    "KeyNotFoundError",
    "InvalidKeyStateError",
    "SerializationError",
    "UnsupportedError",
    "KmsError",
    "RestError",
    # KMS
    "Aead",
    "KmsClient",
    "KmsDriver",
    "get_kms_driver",
    "get_or_create_kms_client",
    "register_kms_driver",
    "LocalKmsDriver",
    "register_local_kms_driver",
    # Registry and Executors (Primary API)
    "MILLIS_IN_DAY",
    "Clock",
    "SystemClock",
    "ENCRYPT_KEK_NAME",
    "ENCRYPT_KMS_TYPE",
    "ENCRYPT_KMS_KEY_ID",
    "ENCRYPT_DEK_ALGORITHM",
    "ENCRYPT_DEK_EXPIRY_DAYS",
    "Executor",
    "ExecutorTransform",
    "FieldEncryptionExecutor",
    "register",
    "register_executor_with_clock",
    "KeyManager",
    "LATEST_VERSION",
    "Kek",
    "KekId",
    "Dek",
    "DekId",
    "DekRegistryClient",
    "InMemoryDekRegistryClient",
    "new_dek_registry_client",
    "FieldType",
    "RuleContext",
    "RuleExecutor",
    "RuleMode",
    "get_rule_executor",
]
