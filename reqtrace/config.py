# FILE: reqtrace/config.py
from __future__ import annotations

import base64
import logging
import os
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Tuple, Union
from urllib.parse import unquote, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .route import normalize_route_pattern
from .types import BodyMode, LogLevel

_log = logging.getLogger(__name__)

ENV_ENDPOINT_URL = "REQTRACE_ENDPOINT_URL"
ENV_SPAN_PROCESSOR = "REQTRACE_SPAN_PROCESSOR"

TRACES_PATH = "/v1/traces"

_BODY_MODES = ("none", "text", "base64")
_LOG_LEVELS = ("debug", "info", "warn", "error")
_SPAN_PROCESSORS = ("simple", "batch")


class ConfigError(ValueError):
    """
    Raised while resolving emitter configuration.

    `code` is one of:
      - INVALID_CONFIG: missing or malformed field;
      - INVALID_REDACTION: unusable redaction policy.
    """

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_str(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


# ---------------------------------------------------------------------------
# Resolved sections (immutable, shared by all requests)
# ---------------------------------------------------------------------------


class _Frozen(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ExporterConfig(_Frozen):
    endpoint_url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout_ms: int = Field(default=30000, ge=0)
    # "batch" for long-lived services, "simple" exports every span immediately.
    span_processor: Literal["simple", "batch"] = "batch"


class CaptureConfig(_Frozen):
    request_headers: bool = True
    response_headers: bool = True
    request_body: BodyMode = "text"
    response_body: BodyMode = "text"
    max_body_bytes: int = Field(default=65536, ge=0)


class RedactionConfig(_Frozen):
    headers: Tuple[str, ...] = ("authorization", "cookie", "set-cookie", "x-api-key")
    query_params: Tuple[str, ...] = ()
    body_json_paths: Tuple[str, ...] = ()
    replacement: str = "[REDACTED]"


class RequestIdConfig(_Frozen):
    # Response header read at the end of the request; stored lowercased.
    header: str = "request-id"


class RouteConfig(_Frozen):
    normalize: bool = True
    normalizer: Optional[Callable[[str], str]] = normalize_route_pattern


class ResolvedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    service_name: str
    environment: Optional[str] = None
    version: Optional[str] = None
    logger: Any = None
    log_level: LogLevel = "warn"
    exporter: ExporterConfig
    capture: CaptureConfig = CaptureConfig()
    redaction: RedactionConfig = RedactionConfig()
    request_id: RequestIdConfig = RequestIdConfig()
    route: RouteConfig = RouteConfig()


# ---------------------------------------------------------------------------
# User-facing input
# ---------------------------------------------------------------------------


class EmitterConfig(BaseModel):
    """
    Raw emitter configuration. Every section is a partial mapping; omitted
    keys take their defaults. A plain dict with the same keys is accepted
    wherever an EmitterConfig is.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    service_name: str
    environment: Optional[str] = None
    version: Optional[str] = None
    logger: Any = None
    log_level: Optional[str] = None
    endpoint_url: Optional[str] = None
    exporter: Optional[Dict[str, Any]] = None
    capture: Optional[Dict[str, Any]] = None
    redaction: Optional[Dict[str, Any]] = None
    request_id: Optional[Dict[str, Any]] = None
    route: Optional[Dict[str, Any]] = None


RawConfig = Union[EmitterConfig, Mapping[str, Any]]


def _section(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, Mapping):
        return {k: v for k, v in value.items() if v is not None}
    raise ConfigError("INVALID_CONFIG", f"expected a mapping, got {type(value).__name__}")


def _raw_fields(raw: RawConfig) -> Dict[str, Any]:
    if isinstance(raw, EmitterConfig):
        return {k: getattr(raw, k) for k in EmitterConfig.model_fields}
    if not isinstance(raw, Mapping):
        raise ConfigError("INVALID_CONFIG", "configuration must be a mapping")
    unknown = set(raw) - set(EmitterConfig.model_fields)
    if unknown:
        raise ConfigError("INVALID_CONFIG", f"unknown configuration keys: {sorted(unknown)}")
    return dict(raw)


def _clean_list(values: Any) -> Tuple[str, ...]:
    if not values:
        return ()
    if isinstance(values, str):
        values = [values]
    return tuple(s for s in (str(v).strip() for v in values) if s)


def _lower(values: Tuple[str, ...]) -> Tuple[str, ...]:
    return tuple(v.lower() for v in values)


def _opt_label(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    v = str(value).strip()
    return v or None


# ---------------------------------------------------------------------------
# Section resolvers
# ---------------------------------------------------------------------------


def _resolve_capture(cfg: Dict[str, Any]) -> CaptureConfig:
    for key in ("request_body", "response_body"):
        if key in cfg and cfg[key] not in _BODY_MODES:
            raise ConfigError("INVALID_CONFIG", f"capture.{key} must be none, text, or base64")
    mbb = cfg.get("max_body_bytes")
    if mbb is not None and (isinstance(mbb, bool) or not isinstance(mbb, int) or mbb < 0):
        raise ConfigError("INVALID_CONFIG", "capture.max_body_bytes must be an integer >= 0")
    return CaptureConfig(**cfg)


def _resolve_redaction(cfg: Dict[str, Any]) -> RedactionConfig:
    base = RedactionConfig()
    out: Dict[str, Any] = {
        "headers": _lower(_clean_list(cfg["headers"])) if "headers" in cfg else base.headers,
        "query_params": _lower(_clean_list(cfg.get("query_params"))),
        "body_json_paths": _clean_list(cfg.get("body_json_paths")),
        "replacement": base.replacement if cfg.get("replacement") is None else cfg["replacement"],
    }
    extra = set(cfg) - set(out)
    if extra:
        raise ConfigError("INVALID_REDACTION", f"unknown redaction keys: {sorted(extra)}")
    if not isinstance(out["replacement"], str) or not out["replacement"].strip():
        raise ConfigError("INVALID_REDACTION", "redaction.replacement must be non-empty")
    return RedactionConfig(**out)


def _resolve_request_id(cfg: Dict[str, Any]) -> RequestIdConfig:
    header = str(cfg.get("header", RequestIdConfig().header)).strip().lower()
    if not header:
        raise ConfigError("INVALID_CONFIG", "request_id.header must be non-empty")
    return RequestIdConfig(header=header)


def _resolve_route(cfg: Dict[str, Any]) -> RouteConfig:
    normalize = bool(cfg.get("normalize", True))
    normalizer = cfg.get("normalizer") or normalize_route_pattern
    if not callable(normalizer):
        raise ConfigError("INVALID_CONFIG", "route.normalizer must be callable")
    return RouteConfig(normalize=normalize, normalizer=normalizer)


def _resolve_span_processor(configured: Optional[str]) -> str:
    if configured:
        if configured not in _SPAN_PROCESSORS:
            raise ConfigError("INVALID_CONFIG", 'exporter.span_processor must be "simple" or "batch"')
        return configured
    env = _env_str(ENV_SPAN_PROCESSOR)
    if env is None:
        return "batch"
    if env not in _SPAN_PROCESSORS:
        raise ConfigError("INVALID_CONFIG", f'{ENV_SPAN_PROCESSOR} must be "simple" or "batch"')
    return env


def normalize_endpoint(endpoint_url: Optional[str]) -> str:
    """
    Explicit value, else REQTRACE_ENDPOINT_URL; ``/v1/traces`` appended
    unless already present.
    """
    resolved = endpoint_url if endpoint_url is not None else _env_str(ENV_ENDPOINT_URL)
    if not resolved or not resolved.strip():
        raise ConfigError(
            "INVALID_CONFIG",
            f"endpoint_url is required (set endpoint_url or {ENV_ENDPOINT_URL})",
        )
    trimmed = resolved.strip()
    if trimmed.endswith("/"):
        trimmed = trimmed[:-1]
    if trimmed.endswith(TRACES_PATH):
        return trimmed
    return trimmed + TRACES_PATH


def apply_endpoint_auth(endpoint_url: str, headers: Mapping[str, str]) -> Tuple[str, Dict[str, str]]:
    """
    Move ``user:pass@`` credentials out of the endpoint URL.

    The URL is returned without userinfo. An ``Authorization: Basic ...``
    header is added unless the caller already supplied an authorization
    header (any casing).
    """
    out_headers = dict(headers)
    try:
        parts = urlsplit(endpoint_url)
        username = parts.username
        password = parts.password
    except ValueError:
        return endpoint_url, out_headers

    username = unquote(username or "")
    password = unquote(password or "")
    if not username and not password:
        return endpoint_url, out_headers

    host = parts.netloc.rpartition("@")[2]
    sanitized = urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))
    if any(k.lower() == "authorization" for k in out_headers):
        return sanitized, out_headers

    _log.debug("exporter endpoint credentials moved to Authorization header")
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    out_headers["Authorization"] = f"Basic {token}"
    return sanitized, out_headers


def _resolve_exporter(endpoint_url: Optional[str], cfg: Dict[str, Any]) -> ExporterConfig:
    endpoint = normalize_endpoint(cfg.get("endpoint_url", endpoint_url))
    raw_headers = cfg.get("headers") or {}
    if not isinstance(raw_headers, Mapping):
        raise ConfigError("INVALID_CONFIG", "exporter.headers must be a mapping")
    endpoint, headers = apply_endpoint_auth(endpoint, {str(k): str(v) for k, v in raw_headers.items()})

    timeout_ms = cfg.get("timeout_ms", 30000)
    if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, (int, float)) or timeout_ms < 0:
        raise ConfigError("INVALID_CONFIG", "exporter.timeout_ms must be a number >= 0")

    extra = set(cfg) - {"endpoint_url", "headers", "timeout_ms", "span_processor"}
    if extra:
        raise ConfigError("INVALID_CONFIG", f"unknown exporter keys: {sorted(extra)}")

    return ExporterConfig(
        endpoint_url=endpoint,
        headers=headers,
        timeout_ms=int(timeout_ms),
        span_processor=_resolve_span_processor(cfg.get("span_processor")),
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def resolve_config(raw: RawConfig) -> ResolvedConfig:
    """
    Validate and default a raw configuration.

    - never mutates `raw`; resolving the same input twice gives equal results;
    - raises ConfigError for anything unusable, so a bad config never yields
      a partially working emitter.
    """
    if raw is None:
        raise ConfigError("INVALID_CONFIG", "service_name is required")
    fields = _raw_fields(raw)

    service_name = fields.get("service_name")
    if not isinstance(service_name, str) or not service_name.strip():
        raise ConfigError("INVALID_CONFIG", "service_name is required")

    log_level = fields.get("log_level") or "warn"
    if log_level not in _LOG_LEVELS:
        raise ConfigError("INVALID_CONFIG", "log_level must be debug, info, warn, or error")

    try:
        return ResolvedConfig(
            service_name=service_name.strip(),
            environment=_opt_label(fields.get("environment")),
            version=_opt_label(fields.get("version")),
            logger=fields.get("logger") or logging.getLogger("reqtrace"),
            log_level=log_level,
            exporter=_resolve_exporter(fields.get("endpoint_url"), _section(fields.get("exporter"))),
            capture=_resolve_capture(_section(fields.get("capture"))),
            redaction=_resolve_redaction(_section(fields.get("redaction"))),
            request_id=_resolve_request_id(_section(fields.get("request_id"))),
            route=_resolve_route(_section(fields.get("route"))),
        )
    except ValidationError as exc:
        raise ConfigError("INVALID_CONFIG", _validation_message(exc)) from exc


def _validation_message(exc: ValidationError) -> str:
    errs = exc.errors()
    if not errs:
        return str(exc)
    first = errs[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{loc}: {first.get('msg', 'invalid value')}" if loc else str(first.get("msg"))


# ---------------------------------------------------------------------------
# Per-request overrides
# ---------------------------------------------------------------------------


def merge_capture(base: CaptureConfig, override: Optional[Mapping[str, Any]]) -> CaptureConfig:
    """Capture policy for one request: `override` keys on top of `base`."""
    patch = _section(override)
    if not patch:
        return base
    merged = base.model_dump()
    merged.update(patch)
    try:
        return _resolve_capture(merged)
    except ValidationError as exc:
        raise ConfigError("INVALID_CONFIG", _validation_message(exc)) from exc


def merge_redaction(base: RedactionConfig, override: Optional[Mapping[str, Any]]) -> RedactionConfig:
    """
    Redaction policy for one request.

    Header and query names are trimmed and lowercased, JSON paths trimmed;
    an empty replacement keeps the base token.
    """
    patch = _section(override)
    if not patch:
        return base
    merged = base.model_dump()
    if "headers" in patch:
        merged["headers"] = _lower(_clean_list(patch["headers"]))
    if "query_params" in patch:
        merged["query_params"] = _lower(_clean_list(patch["query_params"]))
    if "body_json_paths" in patch:
        merged["body_json_paths"] = _clean_list(patch["body_json_paths"])
    replacement = patch.get("replacement")
    if isinstance(replacement, str) and replacement.strip():
        merged["replacement"] = replacement
    extra = set(patch) - set(merged)
    if extra:
        raise ConfigError("INVALID_REDACTION", f"unknown redaction keys: {sorted(extra)}")
    return RedactionConfig(**merged)
