# FILE: reqtrace/buffer.py
from __future__ import annotations

import math
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, Optional

from .request_log import make_captured_body
from .types import BodyMode, CapturedBody

_INITIAL_CAPACITY = 32 * 1024


class LimitedBuffer:
    """
    Append-only byte buffer bounded by a fixed limit.

    - bytes beyond the limit are dropped, but still counted in total_bytes();
    - a limit of 0 captures nothing and only counts;
    - storage grows geometrically and is never allocated past the limit.

    Owned by exactly one capture pipeline; not safe for concurrent writers.
    """

    __slots__ = ("_buf", "_len", "_limit", "_truncated", "_total")

    def __init__(self, limit: float) -> None:
        if isinstance(limit, float) and not math.isfinite(limit):
            limit = 0
        self._limit = max(0, int(limit))
        self._buf = bytearray(min(self._limit, _INITIAL_CAPACITY))
        self._len = 0
        self._truncated = False
        self._total = 0

    @property
    def limit(self) -> int:
        return self._limit

    def bytes(self) -> bytes:
        return bytes(self._buf[: self._len])

    def captured_bytes(self) -> int:
        return self._len

    def total_bytes(self) -> int:
        return self._total

    def truncated(self) -> bool:
        return self._truncated

    def write(self, chunk: bytes) -> None:
        if not chunk:
            return
        n = len(chunk)
        self._total += n
        remaining = self._limit - self._len
        if remaining <= 0:
            self._truncated = True
            return

        take = min(remaining, n)
        self._ensure_capacity(self._len + take)
        self._buf[self._len : self._len + take] = memoryview(chunk)[:take]
        self._len += take
        if take < n:
            self._truncated = True

    def _ensure_capacity(self, size: int) -> None:
        cap = len(self._buf)
        if cap >= size:
            return
        nxt = cap or 1
        while nxt < size:
            nxt *= 2
        nxt = min(nxt, self._limit)
        grown = bytearray(nxt)
        grown[: self._len] = self._buf[: self._len]
        self._buf = grown


# ---------- stream helpers ----------


def tee(chunks: Iterable[bytes], buffer: LimitedBuffer) -> Iterator[bytes]:
    """
    Pass a chunk stream through unchanged while copying it into `buffer`.

    Whatever was seen before the consumer stops, or before the source raises,
    stays captured.
    """
    for chunk in chunks:
        buffer.write(chunk)
        yield chunk


async def atee(chunks: AsyncIterable[bytes], buffer: LimitedBuffer) -> AsyncIterator[bytes]:
    """Async variant of tee(); cancellation keeps the partial capture."""
    async for chunk in chunks:
        buffer.write(chunk)
        yield chunk


class BodyCapture:
    """
    A LimitedBuffer bound to a body capture mode.

    mode "none" keeps counting bytes but never produces a CapturedBody.
    """

    def __init__(self, mode: BodyMode, limit: int) -> None:
        self.mode: BodyMode = mode
        self.buffer = LimitedBuffer(limit)
        self.seen = False

    @property
    def enabled(self) -> bool:
        return self.mode != "none"

    def write(self, chunk: bytes) -> None:
        self.seen = True
        self.buffer.write(chunk)

    def wrap(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        self.seen = True
        return tee(chunks, self.buffer)

    def awrap(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        self.seen = True
        return atee(chunks, self.buffer)

    def captured(self) -> Optional[CapturedBody]:
        if not self.enabled or not self.seen:
            return None
        return make_captured_body(
            self.buffer.bytes(),
            self.buffer.total_bytes(),
            self.buffer.truncated(),
            "text" if self.mode == "text" else "base64",
        )
