# FILE: reqtrace/ids.py
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from .encoding import decode_base48_lex, encode_base48_lex, encode_base62_lex, EncodingError

REQUEST_ID_PREFIX = "req_"

_UUID_BYTES = 16


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def uuid7_bytes(now_ms: Optional[Callable[[], int]] = None) -> bytes:
    """
    Build a 16-byte time-ordered UUID (version 7).

    Layout (most significant first):
      - 48 bits: unix epoch milliseconds;
      - 4 bits:  version (0b0111);
      - 12 bits: random;
      - 2 bits:  variant (0b10);
      - 62 bits: random.
    """
    ts = int((now_ms or _now_ms)()) & 0xFFFFFFFFFFFF
    buf = bytearray(os.urandom(_UUID_BYTES))
    buf[0:6] = ts.to_bytes(6, "big")
    buf[6] = (buf[6] & 0x0F) | 0x70
    buf[8] = (buf[8] & 0x3F) | 0x80
    return bytes(buf)


def format_uuid(raw: bytes) -> str:
    h = raw.hex()
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


def uuid7(now_ms: Optional[Callable[[], int]] = None) -> str:
    """Canonical hyphenated hex rendering (36 characters)."""
    return format_uuid(uuid7_bytes(now_ms))


def uuid7_base62(now_ms: Optional[Callable[[], int]] = None) -> str:
    """Base62 rendering (22 characters)."""
    return encode_base62_lex(uuid7_bytes(now_ms))


def uuid7_base48(now_ms: Optional[Callable[[], int]] = None) -> str:
    """Lexicographically safe base48 rendering (23 characters)."""
    return encode_base48_lex(uuid7_bytes(now_ms))


def generate_request_id(now_ms: Optional[Callable[[], int]] = None) -> str:
    """
    Fresh externally visible request id, e.g. ``req_2CVncfzj9FY2Szh8dnDfjZM``.

    Ids minted in later milliseconds sort after earlier ones under plain
    string comparison. Within one millisecond the random bits decide.
    """
    return REQUEST_ID_PREFIX + uuid7_base48(now_ms)


def parse_request_id(value: str) -> bytes:
    """
    Decode a request id produced by generate_request_id() back to its
    16 UUID bytes.

    Raises EncodingError when the value is not a well-formed request id.
    """
    if not value.startswith(REQUEST_ID_PREFIX):
        raise EncodingError("request id: missing prefix")
    raw = decode_base48_lex(value[len(REQUEST_ID_PREFIX) :])
    if len(raw) != _UUID_BYTES:
        raise EncodingError("request id: invalid length")
    return raw


def request_id_timestamp_ms(value: str) -> int:
    """Millisecond timestamp embedded in a request id."""
    return int.from_bytes(parse_request_id(value)[0:6], "big")
