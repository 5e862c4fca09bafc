"""
Field Encryption Benchmark CLI.

Usage:
    field-encryption-benchmark

Or run directly:
    python -m field_encryption.benchmark

Setup:
    Set LOCAL_SECRET in the environment or a .env file. The benchmark uses the
    local KMS driver and an in-memory key registry.
"""

from __future__ import annotations

import os
import sys
import time
from typing import Dict, List

from dotenv import load_dotenv

from field_encryption.clock import MILLIS_IN_DAY
from field_encryption.crypto import AES128_GCM, AES256_GCM, AES256_SIV
from field_encryption.executor import (
    ENCRYPT_DEK_ALGORITHM,
    ENCRYPT_DEK_EXPIRY_DAYS,
    ENCRYPT_KEK_NAME,
    ENCRYPT_KMS_KEY_ID,
    ENCRYPT_KMS_TYPE,
    FieldEncryptionExecutor,
)
from field_encryption.local_kms import SECRET_ENV_VAR, register_local_kms_driver
from field_encryption.registry import LATEST_VERSION, InMemoryDekRegistryClient
from field_encryption.rules import FieldType, RuleContext, RuleMode


class _SteppingClock:
    """Clock the benchmark can move forward to force DEK rotation."""

    def __init__(self) -> None:
        self.offset_millis = 0

    def now_unix_millis(self) -> int:
        return time.time_ns() // 1_000_000 + self.offset_millis


def _params(algorithm: str, expiry_days: int = 0) -> Dict[str, str]:
    params = {
        ENCRYPT_KEK_NAME: "benchmark-kek",
        ENCRYPT_KMS_TYPE: "local-kms",
        ENCRYPT_KMS_KEY_ID: "benchmark",
        ENCRYPT_DEK_ALGORITHM: algorithm,
    }
    if expiry_days:
        params[ENCRYPT_DEK_EXPIRY_DAYS] = str(expiry_days)
    return params


def run_benchmark() -> None:
    """Run the field encryption benchmark."""
    print("=== Field Encryption Benchmark ===\n")

    # Load environment variables
    load_dotenv()

    if not os.environ.get(SECRET_ENV_VAR):
        print(f"ERROR: {SECRET_ENV_VAR} must be set in environment or .env file")
        sys.exit(1)

    # Get test quantity from user
    try:
        user_input = input("Enter number of fields to test (default: 1000): ").strip()
        test_quantity = int(user_input) if user_input else 1000
    except ValueError:
        test_quantity = 1000
    if test_quantity <= 0:
        test_quantity = 1000
    print(f"Testing with {test_quantity} fields\n")

    register_local_kms_driver()
    clock = _SteppingClock()
    client = InMemoryDekRegistryClient({"url": "mock://benchmark"}, clock)
    executor = FieldEncryptionExecutor(client=client, clock=clock)
    executor.configure({"url": "mock://benchmark"})

    print("=" * 70)
    print("                    BENCHMARK START")
    print("=" * 70 + "\n")

    # ========================================================================
    # Demo 1: KEK and first DEK creation
    # ========================================================================
    print("+" + "-" * 68 + "+")
    print("|  Demo 1: KEK + DEK Creation                                       |")
    print("+" + "-" * 68 + "+")

    demo1_start = time.perf_counter()
    ctx = RuleContext("benchmark-value", RuleMode.WRITE, _params(AES256_GCM))
    executor.new_transform(ctx).transform(ctx, FieldType.STRING, "warmup")
    demo1_duration = time.perf_counter() - demo1_start

    print("[OK] KEK and DEK v1 registered")
    print(f"[PERF] Time: {demo1_duration * 1000:.3f}ms\n")

    # ========================================================================
    # Demo 2: Per-algorithm encryption/decryption
    # ========================================================================
    print("+" + "-" * 68 + "+")
    print("|  Demo 2: Field Encryption/Decryption Benchmark                    |")
    print("+" + "-" * 68 + "+")

    rates: Dict[str, float] = {}
    for algorithm in (AES128_GCM, AES256_GCM, AES256_SIV):
        subject = f"benchmark-{algorithm.lower()}"
        values = [f"Sensitive value #{i}" for i in range(test_quantity)]

        write_ctx = RuleContext(subject, RuleMode.WRITE, _params(algorithm))
        encrypt_start = time.perf_counter()
        encrypted: List[str] = []
        for value in values:
            encrypted.append(
                executor.new_transform(write_ctx).transform(write_ctx, FieldType.STRING, value)
            )
        encrypt_time = time.perf_counter() - encrypt_start

        read_ctx = RuleContext(subject, RuleMode.READ, _params(algorithm))
        decrypt_start = time.perf_counter()
        for value, ciphertext in zip(values, encrypted):
            decrypted = executor.new_transform(read_ctx).transform(
                read_ctx, FieldType.STRING, ciphertext
            )
            if decrypted != value:
                print(f"[ERROR] {algorithm} round trip mismatch")
                sys.exit(1)
        decrypt_time = time.perf_counter() - decrypt_start

        rates[algorithm] = test_quantity / encrypt_time
        print(f"[OK] {algorithm}: {test_quantity} fields round-tripped")
        print(f"[PERF] Encryption: {encrypt_time * 1000:.3f}ms ({test_quantity / encrypt_time:.2f} ops/sec)")
        print(f"[PERF] Decryption: {decrypt_time * 1000:.3f}ms ({test_quantity / decrypt_time:.2f} ops/sec)\n")

    # ========================================================================
    # Demo 3: DEK rotation
    # ========================================================================
    print("+" + "-" * 68 + "+")
    print("|  Demo 3: DEK Rotation (expiry 1 day)                              |")
    print("+" + "-" * 68 + "+")

    rotated_params = _params(AES256_GCM, expiry_days=1)
    write_ctx = RuleContext("benchmark-rotated", RuleMode.WRITE, rotated_params)
    versions: List[int] = []
    demo3_start = time.perf_counter()
    for _ in range(3):
        transform = executor.new_transform(write_ctx)
        transform.transform(write_ctx, FieldType.BYTES, b"rotating payload")
        dek = transform.key_manager.get_or_create_dek(
            write_ctx.subject, LATEST_VERSION, read_mode=True
        )
        versions.append(dek.version)
        clock.offset_millis += 2 * MILLIS_IN_DAY
    demo3_duration = time.perf_counter() - demo3_start

    print(f"[OK] DEK versions used: {versions}")
    print(f"[PERF] Time: {demo3_duration * 1000:.3f}ms\n")

    # ========================================================================
    # Summary
    # ========================================================================
    print("=" * 70)
    print("                    BENCHMARK SUMMARY")
    print("=" * 70 + "\n")

    print("+- Encryption Throughput --------------------------------------------+")
    print("|                                                                    |")
    for algorithm, rate in rates.items():
        rate_str = f"{rate:.2f}"
        print(f"|  {algorithm}:        {rate_str} ops/sec" + " " * (38 - len(rate_str)) + "|")
    print("|                                                                    |")
    print("+--------------------------------------------------------------------+")

    print("\nTest Configuration:")
    print(f"  - Total fields tested: {test_quantity}")
    print("  - KMS: local-kms (HKDF-derived AES-128-GCM master key)")
    print("  - Registry: in-memory")

    print("\n" + "=" * 70)
    print("                    BENCHMARK COMPLETE")
    print("=" * 70 + "\n")

    executor.close()


def main() -> None:
    """CLI entry point for field-encryption-benchmark command."""
    run_benchmark()


if __name__ == "__main__":
    main()
