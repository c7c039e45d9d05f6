# FILE: reqtrace/route.py
from __future__ import annotations

import re
from typing import Optional

# "GET /users" style prefixes reported by some routers.
_METHOD_PREFIX_RE = re.compile(r"^[A-Z]+\s+/")
_WHITESPACE_RE = re.compile(r"\s+")
_PARAM_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+")
_TRAILING_MODIFIERS_RE = re.compile(r"[?*+]+$")

WILDCARD_PLACEHOLDER = "{wildcard}"


def normalize_route_pattern(route: str) -> str:
    """
    Rewrite a framework route pattern into the canonical ``/a/{param}`` form.

    Handles:
      - bracket params: ``[id]``, ``[...slug]``, ``[[...slug]]``;
      - brace params with decorators: ``{id}``, ``{id?}``, ``{id...}``;
      - colon / dollar params: ``:id``, ``:id(\\d+)``, ``:id?``, ``$id``;
      - bare ``*`` segments, which become ``{wildcard}``;
      - a leading method token (``GET /users``) and any query/fragment.

    Empty input normalizes to ``/``.
    """
    if not route:
        return "/"
    cleaned = _strip_query_and_fragment(route).strip()
    if not cleaned:
        return "/"

    path = _strip_method_prefix(cleaned)
    if not path.startswith("/"):
        path = "/" + path
    segments = [s for s in path.split("/") if s]
    if not segments:
        return "/"
    return "/" + "/".join(_normalize_segment(s) for s in segments)


def _strip_method_prefix(value: str) -> str:
    if not _METHOD_PREFIX_RE.match(value):
        return value
    m = _WHITESPACE_RE.search(value)
    if m is None:
        return value
    return value[m.start() :].strip()


def _strip_query_and_fragment(value: str) -> str:
    # "?" is an optional-param modifier inside braces or parens, or right
    # after a ":name" / "$name" token; anywhere else it starts the query.
    depth = 0
    segment_start = 0
    for i, ch in enumerate(value):
        if ch in "{[(":
            depth += 1
        elif ch in "}])":
            depth = max(0, depth - 1)
        elif depth:
            continue
        elif ch == "/":
            segment_start = i + 1
        elif ch == "#":
            return value[:i]
        elif ch == "?" and not _is_param_token(value[segment_start:i]):
            return value[:i]
    return value


def _is_param_token(segment: str) -> bool:
    return len(segment) > 1 and segment[0] in ":$"


def _normalize_segment(segment: str) -> str:
    if segment == "*":
        return WILDCARD_PLACEHOLDER
    name = _extract_param(segment)
    if name:
        return "{" + name + "}"
    return segment


def _extract_param(segment: str) -> Optional[str]:
    if not segment:
        return None
    if segment.startswith("[") and segment.endswith("]"):
        return _bracket_param(segment)
    if segment.startswith("{") and segment.endswith("}"):
        return _param_name(_strip_decorators(segment[1:-1]))
    if segment.startswith(":") or segment.startswith("$"):
        return _param_name(segment[1:])
    return None


def _bracket_param(segment: str) -> Optional[str]:
    inner = segment[1:-1]
    # Optional catch-all: [[...slug]]
    if inner.startswith("[") and inner.endswith("]"):
        inner = inner[1:-1]
    if inner.startswith("..."):
        inner = inner[3:]
    return _param_name(inner)


def _strip_decorators(value: str) -> str:
    trimmed = value.strip()
    if trimmed.endswith("..."):
        trimmed = trimmed[:-3]
    return _TRAILING_MODIFIERS_RE.sub("", trimmed)


def _param_name(value: str) -> Optional[str]:
    if not value:
        return None
    m = _PARAM_NAME_RE.match(value)
    return m.group(0) if m else None
