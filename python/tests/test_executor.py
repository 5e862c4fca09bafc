"""End-to-end tests for the encryption rule executors."""

from __future__ import annotations

import base64

import pytest

from field_encryption import (
    AES128_GCM,
    AES256_GCM,
    AES256_SIV,
    ENCRYPT_DEK_ALGORITHM,
    ENCRYPT_DEK_EXPIRY_DAYS,
    ENCRYPT_KEK_NAME,
    ENCRYPT_KMS_KEY_ID,
    ENCRYPT_KMS_TYPE,
    HEADER_SIZE,
    MILLIS_IN_DAY,
    ConfigError,
    Executor,
    FieldEncryptionExecutor,
    FieldType,
    InvalidKeyStateError,
    KeyNotFoundError,
    RuleContext,
    RuleMode,
    SerializationError,
    UnsupportedError,
    extract_version,
    get_rule_executor,
    register,
    register_executor_with_clock,
    register_local_kms_driver,
)

ALGORITHMS = [AES128_GCM, AES256_GCM, AES256_SIV]


def write_ctx(params, subject="orders-value"):
    return RuleContext(subject=subject, rule_mode=RuleMode.WRITE, rule_params=dict(params))


def read_ctx(params, subject="orders-value"):
    return RuleContext(subject=subject, rule_mode=RuleMode.READ, rule_params=dict(params))


def encrypt(executor, params, field_type, value):
    ctx = write_ctx(params)
    return executor.new_transform(ctx).transform(ctx, field_type, value)


def decrypt(executor, params, field_type, value):
    ctx = read_ctx(params)
    return executor.new_transform(ctx).transform(ctx, field_type, value)


def test_string_round_trip(executor, rule_params):
    encrypted = encrypt(executor, rule_params, FieldType.STRING, "hello")
    assert isinstance(encrypted, str)
    assert encrypted != "hello"
    base64.b64decode(encrypted, validate=True)
    assert decrypt(executor, rule_params, FieldType.STRING, encrypted) == "hello"


@pytest.mark.parametrize("algorithm", ALGORITHMS)
@pytest.mark.parametrize("expiry_days", [None, "1"])
@pytest.mark.parametrize(
    "field_type,value",
    [
        (FieldType.STRING, "ünïcödé value"),
        (FieldType.BYTES, b"\x00\x01binary\xff"),
        (FieldType.STRING, ""),
        (FieldType.BYTES, b""),
    ],
)
def test_round_trip_matrix(executor, rule_params, algorithm, expiry_days, field_type, value):
    params = dict(rule_params, **{ENCRYPT_DEK_ALGORITHM: algorithm})
    if expiry_days:
        params[ENCRYPT_DEK_EXPIRY_DAYS] = expiry_days
    encrypted = encrypt(executor, params, field_type, value)
    assert encrypted != value
    assert decrypt(executor, params, field_type, encrypted) == value


def test_siv_fields_are_deterministic(executor, rule_params):
    params = dict(rule_params, **{ENCRYPT_DEK_ALGORITHM: AES256_SIV})
    first = encrypt(executor, params, FieldType.STRING, "alice@example.com")
    second = encrypt(executor, params, FieldType.STRING, "alice@example.com")
    assert first == second


def test_gcm_fields_are_randomized(executor, rule_params):
    first = encrypt(executor, rule_params, FieldType.STRING, "alice@example.com")
    second = encrypt(executor, rule_params, FieldType.STRING, "alice@example.com")
    assert first != second


def test_rotation_versions_follow_clock(executor, rule_params, clock):
    params = dict(rule_params, **{ENCRYPT_DEK_EXPIRY_DAYS: "1"})
    first = encrypt(executor, params, FieldType.BYTES, b"payload")
    clock.advance(2 * MILLIS_IN_DAY)
    second = encrypt(executor, params, FieldType.BYTES, b"payload")

    assert extract_version(first)[0] == 1
    assert extract_version(second)[0] == 2
    assert decrypt(executor, params, FieldType.BYTES, first) == b"payload"
    assert decrypt(executor, params, FieldType.BYTES, second) == b"payload"


def test_rotation_frame_in_string_fields(executor, rule_params):
    params = dict(rule_params, **{ENCRYPT_DEK_EXPIRY_DAYS: "30"})
    encrypted = encrypt(executor, params, FieldType.STRING, "hello")
    framed = base64.b64decode(encrypted)
    assert framed[:HEADER_SIZE] == b"\x00\x00\x00\x00\x01"


def test_no_frame_without_rotation(executor, rule_params, memory_registry):
    encrypted = encrypt(executor, rule_params, FieldType.BYTES, b"payload")
    dek = memory_registry.get_dek("kek1", "orders-value", AES256_GCM, 1)
    assert dek.version == 1
    assert len(encrypted) == 12 + len(b"payload") + 16


def test_read_with_missing_frame_fails(executor, rule_params):
    params = dict(rule_params, **{ENCRYPT_DEK_EXPIRY_DAYS: "1"})
    encrypt(executor, params, FieldType.BYTES, b"payload")
    unframed = encrypt(executor, rule_params, FieldType.BYTES, b"payload")
    with pytest.raises(SerializationError):
        decrypt(executor, params, FieldType.BYTES, b"\x07" + unframed)


def test_invalid_base64_fails(executor, rule_params):
    encrypt(executor, rule_params, FieldType.STRING, "hello")
    with pytest.raises(SerializationError, match="Base64"):
        decrypt(executor, rule_params, FieldType.STRING, "not*base64")


def test_none_passes_through(executor, rule_params):
    assert encrypt(executor, rule_params, FieldType.STRING, None) is None
    assert decrypt(executor, rule_params, FieldType.STRING, None) is None


def test_unsupported_type_on_write(executor, rule_params):
    with pytest.raises(UnsupportedError, match="not supported for encryption"):
        encrypt(executor, rule_params, FieldType.INT, 42)


def test_unsupported_type_passes_through_on_read(executor, rule_params):
    encrypt(executor, rule_params, FieldType.STRING, "hello")
    assert decrypt(executor, rule_params, FieldType.INT, 42) == 42


def test_unknown_rule_mode(executor, rule_params):
    encrypt(executor, rule_params, FieldType.STRING, "hello")
    ctx = RuleContext("orders-value", RuleMode.UPGRADE, dict(rule_params))
    with pytest.raises(UnsupportedError, match="unsupported rule mode"):
        executor.new_transform(ctx).transform(ctx, FieldType.STRING, "hello")


def test_read_before_any_write_fails(executor, rule_params):
    with pytest.raises(KeyNotFoundError):
        decrypt(executor, rule_params, FieldType.STRING, "aGVsbG8=")


def test_kek_mismatch_never_contacts_kms(executor, rule_params, memory_registry, fake_kms):
    memory_registry.register_kek("kek1", "fake", "id1")
    params = dict(rule_params, **{ENCRYPT_KMS_TYPE: "other"})
    with pytest.raises(InvalidKeyStateError):
        encrypt(executor, params, FieldType.STRING, "hello")
    assert fake_kms.clients == []


def test_parameters_fall_back_to_metadata(executor, rule_params):
    ctx = RuleContext("orders-value", RuleMode.WRITE, metadata=dict(rule_params))
    encrypted = executor.new_transform(ctx).transform(ctx, FieldType.STRING, "hello")
    assert decrypt(executor, rule_params, FieldType.STRING, encrypted) == "hello"


def test_unsupported_algorithm_fails_on_write(executor, rule_params):
    params = dict(rule_params, **{ENCRYPT_DEK_ALGORITHM: "DES"})
    with pytest.raises(UnsupportedError, match="DES"):
        encrypt(executor, params, FieldType.STRING, "hello")


class TestRuleParameters:
    def test_missing_kek_name(self, executor):
        with pytest.raises(ConfigError, match="no kek name"):
            encrypt(executor, {}, FieldType.STRING, "hello")

    def test_empty_kek_name(self, executor):
        with pytest.raises(ConfigError, match="empty kek name"):
            encrypt(executor, {ENCRYPT_KEK_NAME: ""}, FieldType.STRING, "hello")

    @pytest.mark.parametrize("days", ["-1", "abc", "1.5", " 1", "1_0", ""])
    def test_invalid_expiry_days(self, executor, rule_params, days):
        params = dict(rule_params, **{ENCRYPT_DEK_EXPIRY_DAYS: days})
        with pytest.raises(ConfigError, match="invalid value"):
            encrypt(executor, params, FieldType.STRING, "hello")

    def test_signed_expiry_days_accepted(self, executor, rule_params):
        params = dict(rule_params, **{ENCRYPT_DEK_EXPIRY_DAYS: "+1"})
        encrypted = encrypt(executor, params, FieldType.BYTES, b"payload")
        assert extract_version(encrypted)[0] == 1


class TestConfigure:
    def test_merges_config(self, memory_registry, clock):
        executor = Executor(client=memory_registry, clock=clock)
        executor.configure({"url": "mock://test"}, {"a": "1"})
        executor.configure({"url": "mock://test"}, {"a": "1", "b": "2"})
        assert executor.config == {"a": "1", "b": "2"}

    def test_conflicting_value_rejected(self, memory_registry):
        executor = Executor(client=memory_registry)
        executor.configure({"url": "mock://test"}, {"secret": "one"})
        with pytest.raises(ConfigError, match="already set: secret"):
            executor.configure({"url": "mock://test"}, {"secret": "two"})
        assert executor.config["secret"] == "one"

    def test_different_client_config_rejected(self, memory_registry):
        executor = Executor(client=memory_registry)
        executor.configure({"url": "mock://test"})
        with pytest.raises(ConfigError, match="already configured"):
            executor.configure({"url": "mock://elsewhere"})

    def test_injected_client_config_must_match(self, memory_registry):
        executor = Executor(client=memory_registry)
        with pytest.raises(ConfigError, match="already configured"):
            executor.configure({"url": "mock://elsewhere"})

    def test_builds_mock_client(self):
        executor = Executor()
        executor.configure({"url": "mock://built"})
        assert executor.client is not None

    def test_transform_requires_configure(self, rule_params):
        with pytest.raises(ConfigError, match="not configured"):
            Executor().new_transform(write_ctx(rule_params))


def test_payload_executor(memory_registry, clock, fake_kms, rule_params):
    executor = Executor(client=memory_registry, clock=clock)
    executor.configure({"url": "mock://test"})
    assert executor.type() == "ENCRYPT_PAYLOAD"
    encrypted = executor.transform(write_ctx(rule_params), b"whole payload")
    assert isinstance(encrypted, bytes)
    assert executor.transform(read_ctx(rule_params), encrypted) == b"whole payload"


def test_field_executor_uses_field_transformer(executor, rule_params):
    def encrypt_ssn(ctx, transform, message):
        return dict(message, ssn=transform.transform(ctx, FieldType.STRING, message["ssn"]))

    ctx = write_ctx(rule_params)
    ctx.field_transformer = encrypt_ssn
    record = executor.transform(ctx, {"name": "Ann", "ssn": "123-45-6789"})
    assert record["name"] == "Ann"
    assert record["ssn"] != "123-45-6789"

    ctx = read_ctx(rule_params)
    ctx.field_transformer = encrypt_ssn
    assert executor.transform(ctx, record)["ssn"] == "123-45-6789"


def test_field_executor_requires_field_transformer(executor, rule_params):
    with pytest.raises(UnsupportedError):
        executor.transform(write_ctx(rule_params), {"ssn": "123"})


def test_register_executors(clock):
    register()
    assert isinstance(get_rule_executor("ENCRYPT"), FieldEncryptionExecutor)
    assert isinstance(get_rule_executor("ENCRYPT_PAYLOAD"), Executor)
    executor = register_executor_with_clock(clock)
    assert get_rule_executor("ENCRYPT_PAYLOAD") is executor
    assert executor.clock is clock


def test_local_kms_end_to_end(local_secret, clock):
    register_local_kms_driver()
    executor = FieldEncryptionExecutor(clock=clock)
    executor.configure({"url": "mock://local"})
    params = {
        ENCRYPT_KEK_NAME: "local-kek",
        ENCRYPT_KMS_TYPE: "local-kms",
        ENCRYPT_KMS_KEY_ID: "mykey",
    }
    encrypted = encrypt(executor, params, FieldType.STRING, "hello")
    assert decrypt(executor, params, FieldType.STRING, encrypted) == "hello"
    executor.close()
