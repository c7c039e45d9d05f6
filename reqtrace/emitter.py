# FILE: reqtrace/emitter.py
from __future__ import annotations

import atexit
import inspect
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit

from opentelemetry.sdk.trace.export import SpanExporter

from .attributes import (
    REQUEST_HEADER_PREFIX,
    RESPONSE_HEADER_PREFIX,
    redacted_forwarding_headers,
    set_header_attributes,
    set_request_attributes,
    set_request_body_attributes,
    set_request_id_attribute,
    set_response_body_attributes,
    set_response_status_attribute,
    set_route_attribute,
    set_service_name_attribute,
    set_session_id_attribute,
    set_tenant_id_attribute,
    set_user_id_attribute,
)
from .buffer import BodyCapture
from .config import (
    CaptureConfig,
    ConfigError,
    RawConfig,
    RedactionConfig,
    ResolvedConfig,
    merge_capture,
    merge_redaction,
    resolve_config,
)
from .headers import first_header_value, is_websocket_upgrade
from .ids import generate_request_id
from .logging import log_with_level
from .metrics import EmitterMetrics
from .otel import (
    create_otlp_exporter,
    create_tracer_provider,
    end_span,
    span_ids,
    span_status_from_error,
    start_server_span,
    tracer_from_provider,
)
from .redaction import apply_redaction, is_sensitive_header_name, redact_headers
from .request_log import build_error, iso_timestamp, sanitize_header_values, sanitize_log_string
from .state import RequestContext, RequestHooks, RequestState, StateRegistry
from .types import CapturedBody, HeaderMap, NormalizedRequest, NormalizedResponse, RequestLog

BodySource = Union[CapturedBody, BodyCapture, bytes, Awaitable[Any], None]


@dataclass
class RequestOptions:
    """Per-request overrides applied by start_request()."""

    route: Optional[str] = None
    request_id: Optional[str] = None
    capture: Optional[Mapping[str, Any]] = None
    redaction: Optional[Mapping[str, Any]] = None
    hooks: Optional[RequestHooks] = None


def _now_ms() -> float:
    return time.time() * 1000.0


def _finite(value: Optional[float]) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _normalize_request_id(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    trimmed = value.strip()
    return trimmed or None


def _header_request_id(header: str, headers: Optional[HeaderMap]) -> Optional[str]:
    return _normalize_request_id(first_header_value(headers, header))


def _safe_path(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        parts = None
    if parts is not None and parts.scheme and parts.netloc:
        return parts.path or "/"
    return url.split("?", 1)[0] or "/"


def _capture_bytes(capture: CaptureConfig, direction: str, data: Any) -> Optional[CapturedBody]:
    mode = capture.request_body if direction == "request" else capture.response_body
    cap = BodyCapture(mode, capture.max_body_bytes)
    cap.write(bytes(data))
    return cap.captured()


def span_name(method: str, route: Optional[str], url: str) -> str:
    method = method or "GET"
    if route:
        return f"{method} {route}"
    return f"{method} {_safe_path(url)}"


class Emitter:
    """
    Produces one RequestLog and one server span per request.

    Usage:
        emitter = Emitter({"service_name": "api", "endpoint_url": "https://collector"})
        ctx = emitter.start_request(NormalizedRequest(method="GET", url=url, headers=h))
        ...
        log = emitter.end_request(ctx, NormalizedResponse(status_code=200, headers=rh))

    - ConfigError is raised at construction for unusable configuration;
    - hooks, span writes and metrics never raise into the caller;
    - end_request() on an unknown or already finished context returns a
      minimal log instead of raising;
    - flush()/shutdown() must be called by the embedding application;
      auto_shutdown=True adds a best-effort atexit shutdown on top.
    """

    def __init__(
        self,
        config: Union[RawConfig, ResolvedConfig],
        exporter: Optional[SpanExporter] = None,
        *,
        hooks: Optional[RequestHooks] = None,
        metrics: Optional[EmitterMetrics] = None,
        auto_shutdown: bool = False,
    ) -> None:
        self.config: ResolvedConfig = config if isinstance(config, ResolvedConfig) else resolve_config(config)
        self.hooks = hooks or RequestHooks()
        self.metrics = metrics or EmitterMetrics()
        self._registry = StateRegistry(on_span_failure=self._span_failed)
        self._exporter = exporter if exporter is not None else create_otlp_exporter(self.config)
        self._provider = create_tracer_provider(self.config, self._exporter)
        self._tracer = tracer_from_provider(self._provider)
        self._shutdown_lock = threading.Lock()
        self._shutdown_called = False

        self._log(
            "info",
            "reqtrace: emitter configured",
            {
                "service_name": self.config.service_name,
                "environment": self.config.environment,
                "version": self.config.version,
                "exporter_endpoint": self.config.exporter.endpoint_url,
                "span_processor": self.config.exporter.span_processor,
            },
        )
        if auto_shutdown:
            atexit.register(self._atexit_shutdown)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start_request(self, req: NormalizedRequest, options: Optional[RequestOptions] = None) -> RequestContext:
        """
        Open the span for `req` and return its context handle.

        `req` is updated in place: start_time_ms is filled in, request_id is
        trimmed, and route is normalized when normalization is on.
        """
        options = options or RequestOptions()
        if not _finite(req.start_time_ms):
            req.start_time_ms = _now_ms()
        if options.request_id is not None:
            req.request_id = options.request_id
        if options.route is not None:
            req.route = options.route
        req.request_id = _normalize_request_id(req.request_id)
        req.route = self._normalize_route(req.route)

        capture_override = dict(options.capture) if options.capture else None
        redaction_override = dict(options.redaction) if options.redaction else None
        if capture_override:
            merge_capture(self.config.capture, capture_override)
        if redaction_override:
            merge_redaction(self.config.redaction, redaction_override)

        span = start_server_span(self._tracer, span_name(req.method, req.route, req.url), req.start_time_ms)
        ids = span_ids(span)
        handle = self._registry.new_handle()
        ctx = RequestContext(
            handle,
            self._registry,
            request_id=req.request_id or "",
            trace_id=ids["trace_id"],
            span_id=ids["span_id"],
        )
        state = RequestState(
            request=req,
            span=span,
            context=ctx,
            hooks=options.hooks or self.hooks,
            capture_override=capture_override,
            redaction_override=redaction_override,
        )
        self._registry.register(handle, state)
        self._run_hook("on_request", state.hooks.on_request, ctx, req)
        return ctx

    def end_request(
        self,
        ctx: RequestContext,
        res: NormalizedResponse,
        err: Any = None,
    ) -> RequestLog:
        """
        Finish the request: resolve its id, build and redact the log, end
        the span, then run on_error / on_response.

        The resolved id is written back to `ctx.request_id`.
        """
        log, state, error = self._finish(ctx, res, err)
        if state is not None:
            self._notify(state, log, error)
        return log

    async def end_request_deferred(
        self,
        ctx: RequestContext,
        res: NormalizedResponse,
        err: Any = None,
        *,
        request_body: BodySource = None,
        response_body: BodySource = None,
    ) -> RequestLog:
        """
        end_request() for adapters whose bodies finish after the response
        headers. Pending bodies are awaited and merged before any hook
        sees the log; async hooks are awaited.
        """
        req_body = await self._resolve_body(ctx, request_body, "request")
        res_body = await self._resolve_body(ctx, response_body, "response")
        if res_body is not None:
            res.body = res_body
        if req_body is not None:
            state = self._registry.get(ctx)
            if state is not None:
                with state.lock:
                    state.request.body = req_body

        log, state, error = self._finish(ctx, res, err)
        if state is not None:
            await self._anotify(state, log, error)
        return log

    # ------------------------------------------------------------------
    # per-request updates
    # ------------------------------------------------------------------

    def set_route(self, ctx: RequestContext, route: str) -> None:
        """Record the matched route once the router knows it."""
        normalized = self._normalize_route(route)
        self._with_state(ctx, lambda s: setattr(s.request, "route", normalized))

    def set_request_id(self, ctx: RequestContext, request_id: str) -> None:
        rid = _normalize_request_id(request_id)

        def apply(state: RequestState) -> None:
            state.request.request_id = rid
            ctx.request_id = rid or ""

        self._with_state(ctx, apply)

    def set_capture_override(self, ctx: RequestContext, override: Mapping[str, Any]) -> None:
        """Raises ConfigError when the merged policy is invalid."""
        patch = dict(override)
        merge_capture(self.config.capture, patch)

        def apply(state: RequestState) -> None:
            merged = dict(state.capture_override or {})
            merged.update(patch)
            state.capture_override = merged

        self._with_state(ctx, apply)

    def set_redaction_override(self, ctx: RequestContext, override: Mapping[str, Any]) -> None:
        patch = dict(override)
        merge_redaction(self.config.redaction, patch)

        def apply(state: RequestState) -> None:
            merged = dict(state.redaction_override or {})
            merged.update(patch)
            state.redaction_override = merged

        self._with_state(ctx, apply)

    def body_capture(self, ctx: RequestContext, direction: str) -> Optional[BodyCapture]:
        """
        Bounded capture for the request or response body of `ctx`.

        The adapter writes (or wraps its stream with) the returned capture;
        whatever it holds at finish becomes the body unless one was set
        explicitly. None when the context is unknown.
        """
        if direction not in ("request", "response"):
            raise ValueError(f"direction must be 'request' or 'response', got {direction!r}")
        state = self._registry.get(ctx)
        if state is None:
            return None
        with state.lock:
            capture = self._capture_policy(state)
            mode = capture.request_body if direction == "request" else capture.response_body
            cap = BodyCapture(mode, capture.max_body_bytes)
            if direction == "request":
                state.request_capture = cap
            else:
                state.response_capture = cap
        return cap

    def attach_request_body(self, ctx: RequestContext, body: Union[CapturedBody, bytes, None]) -> None:
        """
        Attach a request body that became available after start_request().

        Raw bytes go through the request capture policy (mode and limit).
        """
        state = self._registry.get(ctx)
        if state is None:
            return
        with state.lock:
            if state.finished:
                return
            if isinstance(body, (bytes, bytearray, memoryview)):
                state.request.body = _capture_bytes(self._capture_policy(state), "request", body)
            else:
                state.request.body = body

    def bind_object(self, target: Any, ctx: RequestContext) -> None:
        """Make `ctx` discoverable from an adapter object via context_for()."""
        self._registry.bind_object(target, ctx)

    def context_for(self, target: Any) -> Optional[RequestContext]:
        return self._registry.context_for(target)

    def active_requests(self) -> int:
        return len(self._registry)

    # ------------------------------------------------------------------
    # export control
    # ------------------------------------------------------------------

    def flush(self, timeout_millis: int = 30000) -> bool:
        return self._provider.force_flush(timeout_millis)

    def shutdown(self) -> None:
        with self._shutdown_lock:
            if self._shutdown_called:
                return
            self._shutdown_called = True
        self._provider.shutdown()

    def __enter__(self) -> "Emitter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def _atexit_shutdown(self) -> None:
        try:
            self.shutdown()
        except Exception as exc:  # pragma: no cover
            self._log("warn", "reqtrace: shutdown at exit failed", {"error": str(exc)})

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _log(self, level: str, message: str, fields: Optional[Dict[str, Any]] = None) -> None:
        log_with_level(self.config.logger, level, self.config.log_level, message, fields)

    def _normalize_route(self, route: Optional[str]) -> Optional[str]:
        if not route or not self.config.route.normalize:
            return route
        normalizer = self.config.route.normalizer
        if normalizer is None:
            return route
        try:
            return normalizer(route)
        except Exception as exc:
            self.metrics.record_hook_failure("route_normalizer")
            self._log("warn", "reqtrace: route normalizer failed", {"route": route, "error": str(exc)})
            return route

    def _span_failed(self, exc: Exception) -> None:
        self.metrics.record_span_failure()
        self._log("warn", "reqtrace: span update failed", {"error": str(exc)})

    def _capture_policy(self, state: RequestState) -> CaptureConfig:
        return merge_capture(self.config.capture, state.capture_override)

    def _redaction_policy(self, state: RequestState) -> RedactionConfig:
        return merge_redaction(self.config.redaction, state.redaction_override)

    def _with_state(self, ctx: RequestContext, fn: Callable[[RequestState], None]) -> None:
        state = self._registry.get(ctx)
        if state is None:
            return
        with state.lock:
            if not state.finished:
                fn(state)

    def _resolve_request_id(self, explicit: Optional[str], headers: Optional[HeaderMap]) -> str:
        return (
            _normalize_request_id(explicit)
            or _header_request_id(self.config.request_id.header, headers)
            or generate_request_id()
        )

    async def _resolve_body(self, ctx: RequestContext, source: BodySource, direction: str) -> Optional[CapturedBody]:
        value: Any = source
        if inspect.isawaitable(source):
            try:
                value = await source
            except Exception as exc:
                self._log("warn", "reqtrace: deferred body failed", {"direction": direction, "error": str(exc)})
                return None
        if value is None or isinstance(value, CapturedBody):
            return value
        if isinstance(value, BodyCapture):
            return value.captured()
        if isinstance(value, (bytes, bytearray, memoryview)):
            state = self._registry.get(ctx)
            if state is None:
                return None
            with state.lock:
                capture = self._capture_policy(state)
            return _capture_bytes(capture, direction, value)
        self._log(
            "warn",
            "reqtrace: deferred body ignored",
            {"direction": direction, "type": type(value).__name__},
        )
        return None

    def _fallback_log(self, ctx: RequestContext, res: NormalizedResponse) -> RequestLog:
        own = isinstance(ctx, RequestContext) and ctx._registry is self._registry
        request_id = self._resolve_request_id(ctx.request_id if own else None, res.headers)
        if own:
            ctx.request_id = request_id
        self._log("debug", "reqtrace: end_request without active request state", {"request_id": request_id})
        return RequestLog(
            request_id=request_id,
            service_name=self.config.service_name,
            method="UNKNOWN",
            url="",
            duration_ms=0,
            status_code=res.status_code,
            timestamp=iso_timestamp(res.end_time_ms),
        )

    def _finish(
        self,
        ctx: RequestContext,
        res: NormalizedResponse,
        err: Any,
    ) -> Tuple[RequestLog, Optional[RequestState], Any]:
        if not _finite(res.end_time_ms):
            res.end_time_ms = _now_ms()
        end_time_ms = res.end_time_ms

        state = self._registry.release(ctx) if isinstance(ctx, RequestContext) else None
        if state is None:
            return self._fallback_log(ctx, res), None, None

        with state.lock:
            state.finished = True
            request = state.request
            if request.body is None and state.request_capture is not None:
                request.body = state.request_capture.captured()
            if res.body is None and state.response_capture is not None:
                res.body = state.response_capture.captured()

            # Raw response headers: a redacted id header still yields the real id.
            request_id = self._resolve_request_id(request.request_id or ctx.request_id, res.headers)
            request.request_id = request_id
            ctx.request_id = request_id

            capture = self._capture_policy(state)
            redaction = self._redaction_policy(state)
            error = err if err is not None else state.error
            response_body = res.body
            if is_websocket_upgrade(res.status_code, res.headers):
                response_body = None

            log = RequestLog(
                request_id=request_id,
                trace_id=ctx.trace_id,
                span_id=ctx.span_id,
                service_name=self.config.service_name,
                method=request.method,
                url=sanitize_log_string(request.url),
                route=request.route,
                status_code=res.status_code,
                duration_ms=max(0.0, end_time_ms - request.start_time_ms),
                request_headers=sanitize_header_values(request.headers) if capture.request_headers else None,
                response_headers=sanitize_header_values(res.headers) if capture.response_headers else None,
                request_body=None if capture.request_body == "none" else request.body,
                response_body=None if capture.response_body == "none" else response_body,
                tenant_id=state.tenant_id or None,
                user_id=state.user_id or None,
                session_id=state.session_id or None,
                error=build_error(error),
                attributes=dict(state.attributes) if state.attributes else None,
                timestamp=iso_timestamp(end_time_ms),
            )

            redacted = apply_redaction(redaction, log)
            if redacted.route:
                redacted.route = self._normalize_route(redacted.route)

            self._finalize_span(state, redacted, redaction, error, end_time_ms)

        self._record_metrics(redacted)
        self._log(
            "debug",
            "reqtrace: request completed",
            {
                "request_id": redacted.request_id,
                "method": redacted.method,
                "route": redacted.route,
                "status_code": redacted.status_code,
                "duration_ms": redacted.duration_ms,
            },
        )
        return redacted, state, error

    def _finalize_span(
        self,
        state: RequestState,
        log: RequestLog,
        redaction: RedactionConfig,
        error: Any,
        end_time_ms: float,
    ) -> None:
        span = state.span
        if span is None:
            return
        request = state.request
        try:
            set_request_attributes(
                span,
                request.method,
                log.url,
                redact_headers(request.headers or {}, redaction),
                request.remote_address,
                replacement=redaction.replacement,
                skip_header=redacted_forwarding_headers(redaction.headers, is_sensitive_header_name),
            )
            set_request_id_attribute(span, log.request_id)
            set_service_name_attribute(span, self.config.service_name)
            if log.status_code is not None:
                set_response_status_attribute(span, log.status_code)
            if log.route:
                set_route_attribute(span, log.route)
            span.update_name(span_name(request.method, log.route, request.url))
            if log.request_headers:
                set_header_attributes(span, log.request_headers, REQUEST_HEADER_PREFIX)
            if log.response_headers:
                set_header_attributes(span, log.response_headers, RESPONSE_HEADER_PREFIX)
            if log.request_body is not None:
                set_request_body_attributes(span, log.request_body)
            if log.response_body is not None:
                set_response_body_attributes(span, log.response_body)
            if state.user_id:
                set_user_id_attribute(span, state.user_id)
            if state.tenant_id:
                set_tenant_id_attribute(span, state.tenant_id)
            if state.session_id:
                set_session_id_attribute(span, state.session_id)
            if error is not None and error is not state.error:
                span_status_from_error(span, error)
        except Exception as exc:
            self.metrics.record_span_failure()
            self._log("warn", "reqtrace: span finalize failed", {"error": str(exc)})
        finally:
            try:
                end_span(span, request.start_time_ms, end_time_ms)
            except Exception as exc:
                self.metrics.record_span_failure()
                self._log("warn", "reqtrace: span end failed", {"error": str(exc)})

    def _record_metrics(self, log: RequestLog) -> None:
        try:
            self.metrics.record_request(log.method, log.status_code, log.duration_ms)
            if log.request_body is not None and log.request_body.truncated:
                self.metrics.record_truncated("request")
            if log.response_body is not None and log.response_body.truncated:
                self.metrics.record_truncated("response")
        except Exception as exc:
            self._log("warn", "reqtrace: metrics update failed", {"error": str(exc)})

    def _run_hook(self, name: str, fn: Optional[Callable[..., Any]], *args: Any) -> Any:
        if fn is None:
            return None
        try:
            return fn(*args)
        except Exception as exc:
            self.metrics.record_hook_failure(name)
            self._log("warn", f"reqtrace: {name} hook failed", {"error": str(exc)})
            return None

    def _notify(self, state: RequestState, log: RequestLog, error: Any) -> None:
        if error is not None:
            self._drop_awaitable("on_error", self._run_hook("on_error", state.hooks.on_error, log, error))
        self._drop_awaitable("on_response", self._run_hook("on_response", state.hooks.on_response, log))

    async def _anotify(self, state: RequestState, log: RequestLog, error: Any) -> None:
        if error is not None:
            await self._await_hook("on_error", self._run_hook("on_error", state.hooks.on_error, log, error))
        await self._await_hook("on_response", self._run_hook("on_response", state.hooks.on_response, log))

    async def _await_hook(self, name: str, result: Any) -> None:
        if not inspect.isawaitable(result):
            return
        try:
            await result
        except Exception as exc:
            self.metrics.record_hook_failure(name)
            self._log("warn", f"reqtrace: {name} hook failed", {"error": str(exc)})

    def _drop_awaitable(self, name: str, result: Any) -> None:
        if inspect.iscoroutine(result):
            result.close()
            self._log("warn", f"reqtrace: async {name} hook needs end_request_deferred()")


def create_emitter(
    config: Union[RawConfig, ResolvedConfig],
    exporter: Optional[SpanExporter] = None,
    **kwargs: Any,
) -> Emitter:
    """Build an Emitter; raises ConfigError for unusable configuration."""
    return Emitter(config, exporter, **kwargs)


__all__ = [
    "ConfigError",
    "Emitter",
    "RequestContext",
    "RequestHooks",
    "RequestOptions",
    "create_emitter",
    "span_name",
]
