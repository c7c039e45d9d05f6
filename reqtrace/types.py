# FILE: reqtrace/types.py
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, Union

# A header value is either a single string or the ordered values of a
# repeated header (e.g. several Set-Cookie lines).
HeaderValue = Union[str, List[str]]
HeaderMap = Dict[str, HeaderValue]

# Values accepted as span / log attributes.
AttributeValue = Union[str, bool, int, float, Sequence[str], Sequence[bool], Sequence[int], Sequence[float]]

BodyEncoding = Literal["utf8", "base64"]
BodyMode = Literal["none", "text", "base64"]
LogLevel = Literal["debug", "info", "warn", "error"]


@dataclass
class CapturedBody:
    """
    Captured request/response payload.

    `bytes` is the size before truncation. When `value` is present, decoding
    it under `encoding` yields the captured prefix of the payload exactly.
    """

    bytes: int
    encoding: BodyEncoding
    truncated: bool
    value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "bytes": self.bytes,
            "encoding": self.encoding,
            "truncated": self.truncated,
        }
        if self.value is not None:
            out["value"] = self.value
        return out


@dataclass
class NormalizedRequest:
    """Runtime-agnostic request description handed over by an adapter."""

    method: str
    url: str
    headers: HeaderMap = field(default_factory=dict)
    route: Optional[str] = None
    body: Optional[CapturedBody] = None
    request_id: Optional[str] = None
    remote_address: Optional[str] = None
    # Milliseconds since the epoch; filled in by start_request() when None.
    start_time_ms: Optional[float] = None


@dataclass
class NormalizedResponse:
    """Runtime-agnostic response description handed over at completion."""

    status_code: Optional[int] = None
    headers: Optional[HeaderMap] = None
    body: Optional[CapturedBody] = None
    end_time_ms: Optional[float] = None


@dataclass
class ErrorDetail:
    message: str
    type: Optional[str] = None
    stack: Optional[str] = None


@dataclass
class RequestLog:
    """Final record emitted once per request."""

    request_id: str
    service_name: str
    method: str
    url: str
    duration_ms: float
    timestamp: str
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    route: Optional[str] = None
    status_code: Optional[int] = None
    request_headers: Optional[HeaderMap] = None
    response_headers: Optional[HeaderMap] = None
    request_body: Optional[CapturedBody] = None
    response_body: Optional[CapturedBody] = None
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    error: Optional[ErrorDetail] = None
    attributes: Optional[Dict[str, AttributeValue]] = None

    def copy(self) -> "RequestLog":
        return dataclasses.replace(self)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready rendering; absent fields are omitted."""
        out: Dict[str, Any] = {}
        for f in dataclasses.fields(self):
            v = getattr(self, f.name)
            if v is None:
                continue
            if isinstance(v, CapturedBody):
                v = v.to_dict()
            elif isinstance(v, ErrorDetail):
                v = {k: x for k, x in dataclasses.asdict(v).items() if x is not None}
            elif isinstance(v, dict):
                v = {k: (list(x) if isinstance(x, (list, tuple)) else x) for k, x in v.items()}
            out[f.name] = v
        return out
