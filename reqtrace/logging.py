# FILE: reqtrace/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import traceback
from typing import Any, Dict, Mapping, Optional, Set, Tuple

from opentelemetry import trace as _otel_trace

from .redaction import is_sensitive_header_name

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SERVICE = os.environ.get("REQTRACE_LOG_SERVICE", "reqtrace")

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = int(os.environ.get("REQTRACE_LOG_MAX_FIELD", "8192"))
    _MAX_FIELD = max(512, _MAX_FIELD)
except ValueError:
    _MAX_FIELD = 8192

_INCLUDE_STACK = os.environ.get("REQTRACE_LOG_INCLUDE_STACK", "1") == "1"

_SCRUBBED = "***"

# Levels accepted by log_with_level(), lowest first.
LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}

# Envelope fields lifted out of the bound context / record extras.
_ENVELOPE_FIELDS: Tuple[str, ...] = (
    "request_id",
    "method",
    "url",
    "route",
    "status_code",
    "duration_ms",
    "tenant_id",
    "user_id",
)

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("reqtrace_log_ctx", default={})


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _otel_ids() -> Tuple[Optional[str], Optional[str]]:
    ctx = _otel_trace.get_current_span().get_span_context()
    if not ctx or not ctx.is_valid:
        return None, None
    return format(ctx.trace_id, "032x"), format(ctx.span_id, "016x")


def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "")
    return f"{base}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def scrub_dict(d: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Scrub obvious secrets from a dict (typically HTTP headers).

    Keys the sensitive-header classifier flags get replaced by "***". Nested
    dictionaries are scrubbed recursively, long strings truncated.
    """
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if is_sensitive_header_name(str(k)):
            out[k] = _SCRUBBED
        elif isinstance(v, Mapping):
            out[k] = scrub_dict(v)
        elif isinstance(v, (list, tuple)):
            out[k] = [_truncate(x) for x in v]
        else:
            out[k] = _truncate(v)
    return out


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Optional[Dict[str, Any]]:
    raw: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        raw[k] = v
    if not raw:
        return None
    return scrub_dict(raw)


class JSONFormatter(logging.Formatter):
    """
    JSON-lines formatter with a stable envelope.

    Envelope fields:
      - ts, lvl, logger, msg, service
      - trace_id, span_id (active span first, then context / extras)
      - request_id, method, url, route, status_code, duration_ms,
        tenant_id, user_id
      - exc_type, exc_message, stack when the record carries an exception

    Remaining record extras go under "meta", with credential-looking keys
    scrubbed.
    """

    def __init__(self, *, include_stack: bool = True, service: str = _LOG_SERVICE):
        super().__init__()
        self.include_stack = include_stack
        self.service = service

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()
        trace_id, span_id = _otel_ids()

        evt: Dict[str, Any] = {
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": str(record.getMessage()),
            "service": self.service,
        }

        def _pick(name: str) -> Optional[Any]:
            if name in ctx:
                return ctx[name]
            return getattr(record, name, None)

        trace_id = trace_id or _pick("trace_id")
        span_id = span_id or _pick("span_id")
        if trace_id:
            evt["trace_id"] = trace_id
        if span_id:
            evt["span_id"] = span_id
        for fld in _ENVELOPE_FIELDS:
            v = _pick(fld)
            if v is not None:
                evt[fld] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(traceback.format_exception(exc_type, exc_val, exc_tb))[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()) | {"trace_id", "span_id"})
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
    logger_name: str = "reqtrace",
) -> logging.Logger:
    """Install JSONFormatter on the reqtrace logger (or `logger_name`)."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    lg = logging.getLogger(logger_name)
    lg.setLevel(lvl)
    _clear_handlers(lg)
    lg.addHandler(h)
    lg.propagate = False
    return lg


# ---------- Level-gated diagnostics ----------
def level_enabled(level: str, threshold: str) -> bool:
    return LEVELS.get(level, logging.WARNING) >= LEVELS.get(threshold, logging.WARNING)


def _as_extra(fields: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if not fields:
        return None
    # LogRecord refuses extras that shadow its own attributes.
    return {str(k): v for k, v in fields.items() if k not in _LOG_RECORD_STD_ATTRS and k != "asctime"}


def log_with_level(
    logger: Any,
    level: str,
    threshold: str,
    message: str,
    fields: Optional[Mapping[str, Any]] = None,
) -> None:
    """
    Emit `message` when `level` is at or above `threshold`.

    `logger` is a logging.Logger or any object with debug/info/warning/error
    methods. Fields travel as flat record extras for logging.Logger and as a
    second positional argument otherwise. A failing logger never raises.
    """
    if logger is None or not level_enabled(level, threshold):
        return
    try:
        if isinstance(logger, logging.Logger):
            logger.log(LEVELS[level], message, extra=_as_extra(fields))
            return
        method = getattr(logger, "warning" if level == "warn" else level, None)
        if method is None and level == "warn":
            method = getattr(logger, "warn", None)
        if method is None:
            return
        if fields:
            method(message, dict(fields))
        else:
            method(message)
    except Exception:  # pragma: no cover
        return


def get_logger(name: str = "reqtrace") -> logging.Logger:
    return logging.getLogger(name)
