# FILE: reqtrace/redaction.py
from __future__ import annotations

import dataclasses
import json
import re
from typing import Any, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union
from urllib.parse import quote_plus, unquote_plus

from .config import RedactionConfig
from .headers import first_header_value, header_values
from .types import CapturedBody, HeaderMap, RequestLog

_AUTH_SCHEMES: Tuple[str, ...] = ("basic", "bearer", "digest", "negotiate")

JsonPathSegment = Union[str, int]

# ---------- sensitive header classifier ----------

_DEFAULT_SENSITIVE_NAMES: Tuple[str, ...] = (
    "authorization",
    "cookie",
    "proxy-authenticate",
    "proxy-authorization",
    "set-cookie",
    "www-authenticate",
)

_DEFAULT_SENSITIVE_KEYWORDS: Tuple[str, ...] = (
    "api-key",
    "api_key",
    "apikey",
    "auth",
    "authenticate",
    "authorization",
    "credential",
    "password",
    "passwd",
    "private-key",
    "private_key",
    "privatekey",
    "secret",
    "session",
    "sessionid",
    "signature",
    "token",
)

_NAME_SEPARATORS_RE = re.compile(r"[-_.]")


def _normalize_name(name: str) -> str:
    return name.strip().lower()


def _compact(normalized: str) -> str:
    return _NAME_SEPARATORS_RE.sub("", normalized)


class SensitiveHeaderMatcher:
    """
    Decides whether a header name looks like it carries credentials.

    A name matches when:
      - it is one of the exact names (auth / cookie family), or
      - one of its ``-``/``_``/``.`` separated tokens is a single-word keyword, or
      - its compacted form (separators removed) contains a compacted keyword,
        so ``X-Api-Key``, ``x_api_key`` and ``xapikey`` all match ``api-key``.

    Immutable after construction.
    """

    __slots__ = ("_exact", "_tokens", "_compacted")

    def __init__(self, names: Iterable[str], keywords: Iterable[str]) -> None:
        exact = set()
        for n in names:
            norm = _normalize_name(n)
            if norm:
                exact.add(norm)
        tokens = set()
        compacted = set()
        for kw in keywords:
            norm = _normalize_name(kw)
            if not norm:
                continue
            c = _compact(norm)
            if c:
                compacted.add(c)
            if not _NAME_SEPARATORS_RE.search(norm):
                tokens.add(norm)
        self._exact: FrozenSet[str] = frozenset(exact)
        self._tokens: FrozenSet[str] = frozenset(tokens)
        self._compacted: Tuple[str, ...] = tuple(sorted(compacted))

    def __call__(self, name: str) -> bool:
        return self.is_sensitive(name)

    def is_sensitive(self, name: str) -> bool:
        norm = _normalize_name(name or "")
        if not norm:
            return False
        if norm in self._exact:
            return True
        for token in _NAME_SEPARATORS_RE.split(norm):
            if token and token in self._tokens:
                return True
        c = _compact(norm)
        if not c:
            return False
        return any(k in c for k in self._compacted)


DEFAULT_SENSITIVE_MATCHER = SensitiveHeaderMatcher(_DEFAULT_SENSITIVE_NAMES, _DEFAULT_SENSITIVE_KEYWORDS)


def is_sensitive_header_name(name: str) -> bool:
    return DEFAULT_SENSITIVE_MATCHER.is_sensitive(name)


# ---------- header values ----------


def auth_scheme_prefix(value: str) -> str:
    """Leading auth scheme of a credential, in its original casing, or ''."""
    if not value:
        return ""
    lower = value.lower()
    for scheme in _AUTH_SCHEMES:
        if lower.startswith(scheme):
            return value[: len(scheme)]
    return ""


def redact_cookie_value(value: str, replacement: str) -> str:
    """``a=1; b=2`` -> ``a=R; b=R``; malformed pairs become R wholesale."""
    if not value:
        return replacement
    out: List[str] = []
    for part in value.split(";"):
        segment = part.strip()
        idx = segment.find("=")
        if not segment or idx <= 0:
            out.append(replacement)
            continue
        out.append(f"{segment[:idx]}={replacement}")
    return "; ".join(out)


def redact_set_cookie_value(value: str, replacement: str) -> str:
    """Redact the leading ``name=value`` pair; attributes stay verbatim."""
    if not value:
        return replacement
    first, sep, rest = value.partition(";")
    idx = first.find("=")
    if idx <= 0:
        return replacement
    redacted = f"{first[:idx]}={replacement}"
    if not sep:
        return redacted
    return f"{redacted};{rest}"


def _redact_header_value(lower_name: str, value: str, replacement: str) -> str:
    if lower_name in ("authorization", "proxy-authorization"):
        scheme = auth_scheme_prefix(value)
        return f"{scheme} {replacement}" if scheme else replacement
    if lower_name == "cookie":
        return redact_cookie_value(value, replacement)
    if lower_name == "set-cookie":
        return redact_set_cookie_value(value, replacement)
    return replacement


def redact_headers(headers: HeaderMap, policy: RedactionConfig) -> HeaderMap:
    """
    Copy `headers` with every listed header's values redacted.

    Names match case-insensitively; the original names are kept. A repeated
    header is redacted entry by entry.
    """
    listed = {h.lower() for h in policy.headers}
    out: HeaderMap = {}
    for name, value in headers.items():
        lower = name.lower()
        if lower not in listed:
            out[name] = value if isinstance(value, str) else list(value)
            continue
        if isinstance(value, str):
            out[name] = _redact_header_value(lower, value, policy.replacement)
        else:
            out[name] = [_redact_header_value(lower, v, policy.replacement) for v in header_values(value)]
    return out


# ---------- url ----------


def redact_url(url: str, policy: RedactionConfig) -> str:
    """
    Replace the values of listed query parameters.

    Parameter names match case-insensitively after form decoding. Only the
    matching parameters are rewritten (``name=%5BREDACTED%5D``); every other
    byte of the URL, relative or absolute, is kept as it was.
    """
    if not url or not policy.query_params:
        return url
    base, hsep, fragment = url.partition("#")
    path, qsep, query = base.partition("?")
    if not qsep or not query:
        return url

    listed = {q.lower() for q in policy.query_params}
    replacement = quote_plus(policy.replacement)
    changed = False
    parts: List[str] = []
    for segment in query.split("&"):
        raw_name = segment.split("=", 1)[0]
        if segment and unquote_plus(raw_name).lower() in listed:
            parts.append(f"{raw_name}={replacement}")
            changed = True
        else:
            parts.append(segment)
    if not changed:
        return url
    return f"{path}?{'&'.join(parts)}{hsep}{fragment}"


# ---------- json body ----------


def is_json_content_type(headers: Optional[HeaderMap]) -> bool:
    value = first_header_value(headers, "content-type")
    if not value:
        return False
    media = value.split(";", 1)[0].strip().lower()
    return media == "application/json" or media.endswith("+json")


def parse_json_path(path: str) -> Optional[List[JsonPathSegment]]:
    """
    Parse ``$.a.b[0][2].c`` into ``["a", "b", 0, 2, "c"]``.

    The ``$.`` prefix is optional. Returns None for an empty path.
    """
    trimmed = (path or "").strip()
    if trimmed.startswith("$."):
        trimmed = trimmed[2:]
    if not trimmed:
        return None

    segments: List[JsonPathSegment] = []
    for part in trimmed.split("."):
        if not part:
            continue
        bracket = part.find("[")
        if bracket == -1:
            segments.append(part)
            continue
        if bracket > 0:
            segments.append(part[:bracket])
        for idx in re.findall(r"\[(\d+)\]", part[bracket:]):
            segments.append(int(idx))
    return segments or None


def _redact_json_path(doc: Any, segments: Sequence[JsonPathSegment], replacement: str) -> None:
    current = doc
    last = len(segments) - 1
    for i, seg in enumerate(segments):
        if isinstance(seg, int):
            if not isinstance(current, list) or seg >= len(current):
                return
        elif not isinstance(current, dict) or seg not in current:
            return
        if i == last:
            current[seg] = replacement
            return
        current = current[seg]


def redact_body(body: CapturedBody, headers: Optional[HeaderMap], policy: RedactionConfig) -> CapturedBody:
    """
    Replace configured JSON paths in a textual JSON body.

    Anything that is not a utf8 JSON body, or does not parse, is returned
    unchanged. Paths that do not resolve are skipped.
    """
    if not policy.body_json_paths:
        return body
    if body.value is None or body.encoding != "utf8":
        return body
    if not is_json_content_type(headers):
        return body
    try:
        doc = json.loads(body.value)
    except ValueError:
        return body

    for path in policy.body_json_paths:
        segments = parse_json_path(path)
        if segments:
            _redact_json_path(doc, segments, policy.replacement)
    return dataclasses.replace(
        body,
        value=json.dumps(doc, ensure_ascii=False, separators=(",", ":")),
    )


# ---------- log ----------


def apply_redaction(policy: RedactionConfig, log: RequestLog) -> RequestLog:
    """
    Return a redacted copy of `log`; the input is not modified.

    Body redaction looks at the already-redacted headers to detect JSON.
    """
    out = log.copy()
    if out.request_headers is not None:
        out.request_headers = redact_headers(out.request_headers, policy)
    if out.response_headers is not None:
        out.response_headers = redact_headers(out.response_headers, policy)
    out.url = redact_url(out.url, policy)
    if out.request_body is not None:
        out.request_body = redact_body(out.request_body, out.request_headers, policy)
    if out.response_body is not None:
        out.response_body = redact_body(out.response_body, out.response_headers, policy)
    return out

