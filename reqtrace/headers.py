# FILE: reqtrace/headers.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Tuple, Union

from .types import HeaderMap, HeaderValue


def header_values(value: Optional[HeaderValue]) -> List[str]:
    """
    The values carried by one header entry, in order.

    Every place that needs to look inside a header value goes through here,
    so a single string and a repeated header are handled identically.
    """
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def get_header(headers: Optional[Mapping[str, HeaderValue]], name: str) -> Optional[HeaderValue]:
    """Case-insensitive lookup; returns the raw entry (string or list)."""
    if not headers:
        return None
    want = name.lower()
    for key, value in headers.items():
        if key.lower() == want:
            return value
    return None


def first_header_value(headers: Optional[Mapping[str, HeaderValue]], name: str) -> Optional[str]:
    values = header_values(get_header(headers, name))
    return values[0] if values else None


def header_token_list(value: Optional[HeaderValue]) -> List[str]:
    """Lowercased comma-separated tokens (``Connection: keep-alive, Upgrade``)."""
    out: List[str] = []
    for v in header_values(value):
        for part in v.split(","):
            token = part.strip().lower()
            if token:
                out.append(token)
    return out


def is_websocket_upgrade(status_code: Optional[int], headers: Optional[Mapping[str, HeaderValue]]) -> bool:
    if status_code != 101:
        return False
    return "websocket" in header_token_list(get_header(headers, "upgrade"))


# ---------- capture ----------


@dataclass
class HeaderCapture:
    headers: HeaderMap
    bytes: int
    truncated: bool


def _entry_size(name: str, value: str) -> int:
    # name ": " value CRLF
    return len(name.encode("utf-8")) + len(value.encode("utf-8")) + 4


def header_values_from_pairs(
    pairs: Iterable[Tuple[Union[str, bytes], Union[str, bytes]]],
    *,
    limit: Optional[int] = None,
) -> HeaderCapture:
    """
    Fold raw (name, value) pairs into a HeaderMap.

    - repeated names collapse into a list, keeping arrival order and the
      casing of the first occurrence;
    - bytes are decoded as latin-1, the HTTP/1 wire charset;
    - with `limit`, entries past the byte budget are dropped and the
      capture is flagged truncated. `bytes` always counts every entry.
    """
    out: HeaderMap = {}
    names: dict = {}
    total = 0
    kept = 0
    truncated = False
    for raw_name, raw_value in pairs:
        name = raw_name.decode("latin-1") if isinstance(raw_name, bytes) else str(raw_name)
        value = raw_value.decode("latin-1") if isinstance(raw_value, bytes) else str(raw_value)
        size = _entry_size(name, value)
        total += size
        if limit is not None and kept + size > limit:
            truncated = True
            continue
        kept += size

        key = names.get(name.lower())
        if key is None:
            names[name.lower()] = name
            out[name] = value
            continue
        prev = out[key]
        if isinstance(prev, str):
            out[key] = [prev, value]
        else:
            prev.append(value)
    return HeaderCapture(headers=out, bytes=total, truncated=truncated)
