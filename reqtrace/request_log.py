# FILE: reqtrace/request_log.py
from __future__ import annotations

import datetime as _dt
import re
import traceback
from typing import Any, Literal, Optional

from .encoding import decode_utf8, encode_base64, is_valid_utf8
from .types import CapturedBody, ErrorDetail, HeaderMap

# ASCII control characters, stripped from anything that ends up in a log line.
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


def sanitize_log_string(value: str) -> str:
    if not value:
        return value
    return _CONTROL_CHARS_RE.sub("", value)


def sanitize_header_values(headers: Optional[HeaderMap]) -> Optional[HeaderMap]:
    """Copy a header map with control characters removed from names and values."""
    if headers is None:
        return None
    out: HeaderMap = {}
    for name, value in headers.items():
        key = sanitize_log_string(name)
        if isinstance(value, str):
            out[key] = sanitize_log_string(value)
        else:
            out[key] = [sanitize_log_string(v) for v in value]
    return out


def make_captured_body(
    data: Optional[bytes],
    total_bytes: int,
    truncated: bool,
    mode: Literal["text", "base64"],
) -> Optional[CapturedBody]:
    """
    Turn captured bytes into a CapturedBody.

    - mode "base64" always base64-encodes;
    - mode "text" keeps valid UTF-8 as text and falls back to base64 for
      anything else, so binary payloads never get mangled;
    - when nothing could be captured (limit 0) the value is omitted.
    """
    if data is None:
        return None
    if not data and total_bytes > 0:
        return CapturedBody(
            bytes=total_bytes,
            encoding="utf8" if mode == "text" else "base64",
            truncated=truncated,
        )
    if mode == "text" and is_valid_utf8(data):
        return CapturedBody(bytes=total_bytes, encoding="utf8", truncated=truncated, value=decode_utf8(data))
    return CapturedBody(bytes=total_bytes, encoding="base64", truncated=truncated, value=encode_base64(data))


def build_error(err: Any) -> Optional[ErrorDetail]:
    if err is None or err is False or err == "":
        return None
    if isinstance(err, BaseException):
        stack = None
        if err.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(err), err, err.__traceback__))
        return ErrorDetail(
            message=str(err) or type(err).__name__,
            type=type(err).__name__,
            stack=stack,
        )
    return ErrorDetail(message=str(err))


def iso_timestamp(epoch_ms: float) -> str:
    """RFC3339 UTC with milliseconds and a trailing Z."""
    ts = _dt.datetime.fromtimestamp(epoch_ms / 1000.0, tz=_dt.timezone.utc)
    ms = int(ts.microsecond / 1000)
    base = ts.replace(microsecond=0).isoformat().replace("+00:00", "")
    return f"{base}.{ms:03d}Z"
