# FILE: reqtrace/attributes.py
from __future__ import annotations

from typing import Callable, Collection, List, Optional
from urllib.parse import urlsplit

from opentelemetry.semconv.attributes.client_attributes import CLIENT_ADDRESS
from opentelemetry.semconv.attributes.http_attributes import (
    HTTP_REQUEST_METHOD,
    HTTP_RESPONSE_STATUS_CODE,
    HTTP_ROUTE,
)
from opentelemetry.semconv.attributes.service_attributes import SERVICE_NAME
from opentelemetry.semconv.attributes.url_attributes import URL_FULL, URL_PATH
from opentelemetry.trace import Span

from .headers import header_values
from .types import CapturedBody, HeaderMap

# ---------- attribute keys ----------

# Incubating semantic-convention keys, spelled out so the stable semconv
# package is all that is required.
ATTR_USER_ID = "user.id"
ATTR_HTTP_REQUEST_BODY_SIZE = "http.request.body.size"
ATTR_HTTP_RESPONSE_BODY_SIZE = "http.response.body.size"

REQUEST_HEADER_PREFIX = "http.request.header."
RESPONSE_HEADER_PREFIX = "http.response.header."

ATTR_REQUEST_ID = "reqtrace.request.id"
ATTR_TENANT_ID = "reqtrace.tenant.id"
ATTR_SESSION_ID = "reqtrace.session.id"
ATTR_REQUEST_BODY = "reqtrace.request.body"
ATTR_REQUEST_BODY_ENCODING = "reqtrace.request.body.encoding"
ATTR_REQUEST_BODY_TRUNCATED = "reqtrace.request.body.truncated"
ATTR_RESPONSE_BODY = "reqtrace.response.body"
ATTR_RESPONSE_BODY_ENCODING = "reqtrace.response.body.encoding"
ATTR_RESPONSE_BODY_TRUNCATED = "reqtrace.response.body.truncated"

# Spans carrying this attribute set to True are never exported. The emitter
# never sets it; framework adapters do, via ctx.set_attribute(ATTR_SPAN_DROP,
# True), for requests such as health checks that should leave no trace.
ATTR_SPAN_DROP = "reqtrace.span.drop"


# ---------- headers ----------


def set_header_attributes(span: Span, headers: Optional[HeaderMap], prefix: str) -> None:
    """One list-valued attribute per header, lowercased names in sorted order."""
    if not headers:
        return
    for key in sorted(headers, key=str.lower):
        values = header_values(headers[key])
        if not values:
            continue
        span.set_attribute(prefix + key.lower(), values)


# ---------- request / response ----------


def _url_path(url: str) -> Optional[str]:
    try:
        parts = urlsplit(url)
    except ValueError:
        parts = None
    if parts is not None and parts.scheme and parts.netloc:
        return parts.path or "/"
    path = url.split("#", 1)[0].split("?", 1)[0]
    return path or None


def set_request_attributes(
    span: Span,
    method: str,
    url: Optional[str],
    headers: Optional[HeaderMap] = None,
    remote_address: Optional[str] = None,
    *,
    replacement: Optional[str] = None,
    skip_header: Optional[Callable[[str], bool]] = None,
) -> None:
    span.set_attribute(HTTP_REQUEST_METHOD, method)
    if url:
        span.set_attribute(URL_FULL, url)
        path = _url_path(url)
        if path:
            span.set_attribute(URL_PATH, path)
    address = client_address(headers, remote_address, replacement=replacement, skip_header=skip_header)
    if address:
        span.set_attribute(CLIENT_ADDRESS, address)


def set_service_name_attribute(span: Span, service_name: str) -> None:
    span.set_attribute(SERVICE_NAME, service_name)


def set_response_status_attribute(span: Span, status_code: int) -> None:
    span.set_attribute(HTTP_RESPONSE_STATUS_CODE, status_code)


def set_route_attribute(span: Span, route: Optional[str]) -> None:
    if route:
        span.set_attribute(HTTP_ROUTE, route)


def set_request_id_attribute(span: Span, request_id: str) -> None:
    span.set_attribute(ATTR_REQUEST_ID, request_id)


def set_user_id_attribute(span: Span, user_id: str) -> None:
    span.set_attribute(ATTR_USER_ID, user_id)


def set_tenant_id_attribute(span: Span, tenant_id: str) -> None:
    span.set_attribute(ATTR_TENANT_ID, tenant_id)


def set_session_id_attribute(span: Span, session_id: str) -> None:
    span.set_attribute(ATTR_SESSION_ID, session_id)


def set_request_body_attributes(span: Span, body: CapturedBody) -> None:
    span.set_attribute(ATTR_HTTP_REQUEST_BODY_SIZE, body.bytes)
    if not body.value:
        return
    span.set_attribute(ATTR_REQUEST_BODY, body.value)
    span.set_attribute(ATTR_REQUEST_BODY_ENCODING, body.encoding)
    if body.truncated:
        span.set_attribute(ATTR_REQUEST_BODY_TRUNCATED, True)


def set_response_body_attributes(span: Span, body: CapturedBody) -> None:
    span.set_attribute(ATTR_HTTP_RESPONSE_BODY_SIZE, body.bytes)
    if not body.value:
        return
    span.set_attribute(ATTR_RESPONSE_BODY, body.value)
    span.set_attribute(ATTR_RESPONSE_BODY_ENCODING, body.encoding)
    if body.truncated:
        span.set_attribute(ATTR_RESPONSE_BODY_TRUNCATED, True)


# ---------- client address ----------


def _values(headers: Optional[HeaderMap], name: str) -> List[str]:
    if not headers:
        return []
    out: List[str] = []
    for key, value in headers.items():
        if key.lower() == name:
            out.extend(header_values(value))
    return out


def normalize_address(value: Optional[str], replacement: Optional[str] = None) -> Optional[str]:
    """
    Host part of an address as found in forwarding headers.

    - surrounding quotes are removed;
    - ``[v6]`` and ``[v6]:port`` unwrap to the bare IPv6 literal;
    - exactly one colon means ``host:port`` and the port is dropped; more
      colons are a bare IPv6 literal and stay as they are;
    - the redaction token and ``unknown`` are not addresses.
    """
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if replacement and trimmed == replacement:
        return None
    if len(trimmed) > 1 and trimmed.startswith('"') and trimmed.endswith('"'):
        trimmed = trimmed[1:-1].strip()
    if not trimmed:
        return None
    end = trimmed.find("]") if trimmed.startswith("[") else -1
    if end != -1:
        trimmed = trimmed[1:end]
    elif trimmed.count(":") == 1:
        trimmed = trimmed.split(":", 1)[0]
    if not trimmed or trimmed.lower() == "unknown":
        return None
    if replacement and trimmed == replacement:
        return None
    return trimmed


def _forwarded_for(values: List[str], replacement: Optional[str]) -> Optional[str]:
    for value in values:
        for entry in value.split(","):
            for param in entry.split(";"):
                key, sep, raw = param.partition("=")
                if not sep or key.strip().lower() != "for":
                    continue
                addr = normalize_address(raw, replacement)
                if addr:
                    return addr
    return None


def _first_address(values: List[str], replacement: Optional[str]) -> Optional[str]:
    for value in values:
        for entry in value.split(","):
            addr = normalize_address(entry, replacement)
            if addr:
                return addr
    return None


def client_address(
    headers: Optional[HeaderMap],
    remote_address: Optional[str] = None,
    *,
    replacement: Optional[str] = None,
    skip_header: Optional[Callable[[str], bool]] = None,
) -> Optional[str]:
    """
    Best guess at the originating client address.

    Tries ``Forwarded: for=``, then the first usable ``X-Forwarded-For``
    entry, then ``X-Real-Ip``, then the transport's remote address.
    A forwarding header for which `skip_header` returns True is not
    consulted at all.
    """
    def usable(name: str) -> List[str]:
        if skip_header is not None and skip_header(name):
            return []
        return _values(headers, name)

    addr = _forwarded_for(usable("forwarded"), replacement)
    if addr:
        return addr
    addr = _first_address(usable("x-forwarded-for"), replacement)
    if addr:
        return addr
    addr = _first_address(usable("x-real-ip"), replacement)
    if addr:
        return addr
    return normalize_address(remote_address)


def redacted_forwarding_headers(redacted: Collection[str], is_sensitive: Callable[[str], bool]) -> Callable[[str], bool]:
    """Predicate for client_address(): forwarding headers listed for redaction or classified sensitive."""
    listed = {h.lower() for h in redacted}

    def skip(name: str) -> bool:
        return name in listed or is_sensitive(name)

    return skip
