# FILE: reqtrace/encoding.py
"""
Order-preserving numeral encodings and body encoding helpers.

Two fixed-alphabet codecs are provided:

  - base48: a vowel-free alphabet (digits commonly read as vowels, 0/1/3/4,
    are excluded as well) used for externally visible request ids;
  - base62: the standard 0-9A-Za-z alphabet.

Both alphabets are sorted by ASCII code, and every chunk is left-padded to a
fixed width, so for byte strings of equal length the lexicographic order of
the encoded strings matches the big-endian order of the input bytes.

Input is split into chunks of at most 32 bytes. Each chunk is encoded as a
big-endian integer in the target base and padded to a width that depends
only on the chunk size, which lets the decoder recover chunk boundaries
from the string length alone.
"""

from __future__ import annotations

import base64
from typing import Dict

BASE48_ALPHABET = "256789BCDFGHJKLMNPQRSTVWXYZbcdfghjklmnpqrstvwxyz"
BASE62_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"

MAX_CHUNK_BYTES = 32


class EncodingError(ValueError):
    """Raised when a string is not a valid encoding for a codec."""


def _encoded_width(size: int, base: int) -> int:
    # Smallest width w with base**w >= 256**size.
    limit = 1 << (8 * size)
    width = 0
    span = 1
    while span < limit:
        span *= base
        width += 1
    return width


class LexCodec:
    """
    Chunked, fixed-width base-N codec over a sorted alphabet.

    Instances are immutable after construction and safe to share across
    threads.
    """

    __slots__ = ("name", "alphabet", "base", "_index", "_width_for_size", "_size_for_width", "_max_width")

    def __init__(self, name: str, alphabet: str) -> None:
        if list(alphabet) != sorted(alphabet) or len(set(alphabet)) != len(alphabet):
            raise ValueError(f"{name}: alphabet must be unique and ASCII-sorted")
        self.name = name
        self.alphabet = alphabet
        self.base = len(alphabet)
        self._index: Dict[str, int] = {ch: i for i, ch in enumerate(alphabet)}
        self._width_for_size: Dict[int, int] = {}
        self._size_for_width: Dict[int, int] = {}
        for size in range(1, MAX_CHUNK_BYTES + 1):
            width = _encoded_width(size, self.base)
            self._width_for_size[size] = width
            self._size_for_width[width] = size
        self._max_width = self._width_for_size[MAX_CHUNK_BYTES]

    # ---------- chunks ----------

    def _encode_chunk(self, chunk: bytes) -> str:
        value = int.from_bytes(chunk, "big")
        digits = []
        while value > 0:
            value, mod = divmod(value, self.base)
            digits.append(self.alphabet[mod])
        encoded = "".join(reversed(digits)) or self.alphabet[0]
        return encoded.rjust(self._width_for_size[len(chunk)], self.alphabet[0])

    def _decode_chunk(self, text: str, size: int) -> bytes:
        value = 0
        for ch in text:
            idx = self._index.get(ch)
            if idx is None:
                raise EncodingError(f"{self.name}: invalid character")
            value = value * self.base + idx
        if value >= 1 << (8 * size):
            raise EncodingError(f"{self.name}: invalid length")
        return value.to_bytes(size, "big")

    # ---------- public API ----------

    def encode(self, data: bytes) -> str:
        if not data:
            return ""
        view = bytes(data)
        parts = []
        for offset in range(0, len(view), MAX_CHUNK_BYTES):
            parts.append(self._encode_chunk(view[offset : offset + MAX_CHUNK_BYTES]))
        return "".join(parts)

    def decode(self, text: str) -> bytes:
        if not text:
            return b""
        if any(ch not in self._index for ch in text):
            raise EncodingError(f"{self.name}: invalid string")

        # Resolve every chunk boundary before decoding anything.
        plan = []
        offset = 0
        while offset < len(text):
            width = min(self._max_width, len(text) - offset)
            size = self._size_for_width.get(width)
            if size is None:
                raise EncodingError(f"{self.name}: invalid length")
            plan.append((offset, width, size))
            offset += width

        out = bytearray()
        for start, width, size in plan:
            out += self._decode_chunk(text[start : start + width], size)
        return bytes(out)

    def encoded_width(self, size: int) -> int:
        """Number of characters used for a chunk of `size` bytes."""
        if size not in self._width_for_size:
            raise ValueError(f"{self.name}: unsupported chunk size {size}")
        return self._width_for_size[size]


BASE48 = LexCodec("base48", BASE48_ALPHABET)
BASE62 = LexCodec("base62", BASE62_ALPHABET)


def encode_base48_lex(data: bytes) -> str:
    return BASE48.encode(data)


def decode_base48_lex(text: str) -> bytes:
    return BASE48.decode(text)


def encode_base62_lex(data: bytes) -> str:
    return BASE62.encode(data)


def decode_base62_lex(text: str) -> bytes:
    return BASE62.decode(text)


# ---------- body payload helpers ----------


def encode_base64(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def is_valid_utf8(data: bytes) -> bool:
    try:
        bytes(data).decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def decode_utf8(data: bytes) -> str:
    """Lenient UTF-8 decode; invalid sequences become U+FFFD."""
    return bytes(data).decode("utf-8", errors="replace")
