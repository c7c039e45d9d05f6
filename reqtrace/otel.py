# FILE: reqtrace/otel.py
from __future__ import annotations

import math
from typing import Any, Dict, Optional

from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, SpanLimits, SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.sdk.trace.sampling import ALWAYS_ON
from opentelemetry.semconv.attributes.exception_attributes import EXCEPTION_MESSAGE, EXCEPTION_TYPE
from opentelemetry.semconv.attributes.service_attributes import SERVICE_NAME, SERVICE_VERSION
from opentelemetry.trace import Span, SpanKind, Status, StatusCode, Tracer

from .attributes import ATTR_SPAN_DROP
from .config import ResolvedConfig
from .logging import log_with_level

TRACER_NAME = "reqtrace"

_ATTRIBUTE_COUNT_LIMIT = 128
# URLs and header values must survive a small body limit.
_MIN_ATTRIBUTE_LENGTH = 16_384
_FORCE_FLUSH_TIMEOUT_MS = 30_000

# Batch processor tuning for long-lived services.
_BATCH_MAX_QUEUE_SIZE = 2048
_BATCH_MAX_EXPORT_SIZE = 512
_BATCH_SCHEDULE_DELAY_MS = 5_000
_BATCH_EXPORT_TIMEOUT_MS = 30_000

_ATTR_DEPLOYMENT_ENVIRONMENT = "deployment.environment.name"


class DropFilterSpanProcessor(SpanProcessor):
    """
    Forwards to `next` except for ended spans flagged with reqtrace.span.drop.

    Nothing in the emitter sets the flag itself; adapters set it through
    RequestContext.set_attribute() for requests they want kept out of the
    trace backend (health checks, readiness polls).
    """

    def __init__(self, next_processor: SpanProcessor) -> None:
        self._next = next_processor

    def on_start(self, span: Any, parent_context: Optional[Context] = None) -> None:
        self._next.on_start(span, parent_context=parent_context)

    def on_end(self, span: ReadableSpan) -> None:
        attrs = span.attributes or {}
        if attrs.get(ATTR_SPAN_DROP) is True:
            return
        self._next.on_end(span)

    def shutdown(self) -> None:
        self._next.shutdown()

    def force_flush(self, timeout_millis: int = _FORCE_FLUSH_TIMEOUT_MS) -> bool:
        return self._next.force_flush(timeout_millis)


def attribute_length_limit(max_body_bytes: int) -> int:
    # Base64 grows 4/3; the limit must fit a fully captured body.
    return max(_MIN_ATTRIBUTE_LENGTH, math.ceil(max_body_bytes * 4 / 3))


def create_span_processor(mode: str, exporter: SpanExporter) -> SpanProcessor:
    if mode == "simple":
        return SimpleSpanProcessor(exporter)
    return BatchSpanProcessor(
        exporter,
        max_queue_size=_BATCH_MAX_QUEUE_SIZE,
        schedule_delay_millis=_BATCH_SCHEDULE_DELAY_MS,
        max_export_batch_size=_BATCH_MAX_EXPORT_SIZE,
        export_timeout_millis=_BATCH_EXPORT_TIMEOUT_MS,
    )


def create_otlp_exporter(config: ResolvedConfig) -> SpanExporter:
    return OTLPSpanExporter(
        endpoint=config.exporter.endpoint_url,
        headers=dict(config.exporter.headers),
        timeout=config.exporter.timeout_ms / 1000.0,
    )


def build_resource(config: ResolvedConfig) -> Resource:
    attrs: Dict[str, Any] = {SERVICE_NAME: config.service_name}
    if config.version:
        attrs[SERVICE_VERSION] = config.version
    if config.environment:
        attrs[_ATTR_DEPLOYMENT_ENVIRONMENT] = config.environment
    return Resource.create(attrs)


def create_tracer_provider(config: ResolvedConfig, exporter: SpanExporter) -> TracerProvider:
    """
    A private TracerProvider for one emitter; the global provider is never
    touched.

    - always-on sampling;
    - attribute values may hold a base64 body of max_body_bytes;
    - processors sit behind DropFilterSpanProcessor.
    """
    if config.exporter.endpoint_url.startswith("http://"):
        log_with_level(
            config.logger,
            "warn",
            config.log_level,
            "reqtrace: OTLP endpoint uses plaintext HTTP",
            {"endpoint": config.exporter.endpoint_url},
        )

    length_limit = attribute_length_limit(config.capture.max_body_bytes)
    limits = SpanLimits(
        max_attributes=_ATTRIBUTE_COUNT_LIMIT,
        max_events=_ATTRIBUTE_COUNT_LIMIT,
        max_links=_ATTRIBUTE_COUNT_LIMIT,
        max_event_attributes=_ATTRIBUTE_COUNT_LIMIT,
        max_link_attributes=_ATTRIBUTE_COUNT_LIMIT,
        max_attribute_length=length_limit,
        max_span_attribute_length=length_limit,
    )
    provider = TracerProvider(
        sampler=ALWAYS_ON,
        resource=build_resource(config),
        span_limits=limits,
    )
    provider.add_span_processor(
        DropFilterSpanProcessor(create_span_processor(config.exporter.span_processor, exporter))
    )
    return provider


def tracer_from_provider(provider: TracerProvider) -> Tracer:
    return provider.get_tracer(TRACER_NAME)


def start_server_span(tracer: Tracer, name: str, start_time_ms: float) -> Span:
    """Server span rooted in an empty context, so it never joins an ambient trace."""
    return tracer.start_span(
        name,
        context=Context(),
        kind=SpanKind.SERVER,
        start_time=int(start_time_ms * 1_000_000),
    )


def end_span(span: Span, start_time_ms: float, end_time_ms: float) -> None:
    span.end(end_time=int(max(start_time_ms, end_time_ms) * 1_000_000))


def span_status_from_error(span: Span, err: Any) -> None:
    if isinstance(err, BaseException):
        span.record_exception(err)
        description = str(err) or type(err).__name__
    else:
        description = str(err)
        span.add_event("exception", {EXCEPTION_TYPE: type(err).__name__, EXCEPTION_MESSAGE: description})
    span.set_status(Status(StatusCode.ERROR, description))


def span_ids(span: Span) -> Dict[str, Optional[str]]:
    ctx = span.get_span_context()
    if not ctx or not ctx.is_valid:
        return {"trace_id": None, "span_id": None}
    return {"trace_id": format(ctx.trace_id, "032x"), "span_id": format(ctx.span_id, "016x")}
