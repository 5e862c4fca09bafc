"""
Ciphertext framing for rotated DEKs.

Layout: [1-byte format marker][4-byte big-endian DEK version][ciphertext]
"""

from __future__ import annotations

import struct
from typing import Tuple

from .errors import SerializationError

MAGIC_BYTE: int = 0x00
VERSION_SIZE: int = 4
HEADER_SIZE: int = 1 + VERSION_SIZE

_HEADER = struct.Struct(">BI")


def prefix_version(version: int, ciphertext: bytes) -> bytes:
    """Prepend the format marker and DEK version to a ciphertext."""
    try:
        header = _HEADER.pack(MAGIC_BYTE, version)
    except struct.error as e:
        raise SerializationError(f"invalid dek version {version}: {e}") from e
    return header + ciphertext


def extract_version(ciphertext: bytes) -> Tuple[int, bytes]:
    """
    Split a framed ciphertext into its DEK version and payload.

    Raises:
        SerializationError: If the header is truncated or the marker is unknown
    """
    if len(ciphertext) < HEADER_SIZE:
        raise SerializationError(
            f"ciphertext too short for version header: {len(ciphertext)} bytes"
        )
    magic, version = _HEADER.unpack_from(ciphertext)
    if magic != MAGIC_BYTE:
        raise SerializationError("unknown format marker")
    return version, bytes(ciphertext[HEADER_SIZE:])
