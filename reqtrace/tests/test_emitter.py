# reqtrace/tests/test_emitter.py
import asyncio
import json

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from reqtrace.attributes import ATTR_SPAN_DROP
from reqtrace.config import ConfigError
from reqtrace.emitter import Emitter, RequestHooks, RequestOptions, create_emitter, span_name
from reqtrace.types import CapturedBody, NormalizedRequest, NormalizedResponse


class ListLogger:
    def __init__(self):
        self.records = []

    def _add(self, level, msg, fields=None):
        self.records.append((level, msg, fields or {}))

    def debug(self, msg, *args):
        self._add("debug", msg, *args)

    def info(self, msg, *args):
        self._add("info", msg, *args)

    def warning(self, msg, *args):
        self._add("warn", msg, *args)

    def error(self, msg, *args):
        self._add("error", msg, *args)

    def messages(self, level):
        return [m for lvl, m, _ in self.records if lvl == level]


def make_emitter(**overrides):
    exporter = InMemorySpanExporter()
    logger = ListLogger()
    cfg = {
        "service_name": "orders",
        "version": "1.2.3",
        "environment": "test",
        "endpoint_url": "https://collector.example.com",
        "exporter": {"span_processor": "simple"},
        "logger": logger,
        "log_level": "debug",
    }
    cfg.update(overrides)
    return Emitter(cfg, exporter), exporter, logger


def req(**kw):
    base = dict(
        method="POST",
        url="https://api.example.com/orders/42?token=s3cr3t",
        headers={"Content-Type": "application/json", "Authorization": "Bearer abc"},
        start_time_ms=1_000.0,
    )
    base.update(kw)
    return NormalizedRequest(**base)


def res(**kw):
    base = dict(status_code=201, headers={"Content-Type": "application/json"}, end_time_ms=1_250.0)
    base.update(kw)
    return NormalizedResponse(**base)


def only_span(exporter):
    spans = exporter.get_finished_spans()
    assert len(spans) == 1
    return spans[0]


def test_invalid_config_raises():
    with pytest.raises(ConfigError):
        Emitter({"service_name": "", "endpoint_url": "https://c"}, InMemorySpanExporter())


def test_configured_message_is_logged():
    _, _, logger = make_emitter()
    assert "reqtrace: emitter configured" in logger.messages("info")


def test_full_lifecycle():
    emitter, exporter, logger = make_emitter()
    ctx = emitter.start_request(req(route="/orders/:id"))
    assert ctx.trace_id and ctx.span_id
    log = emitter.end_request(ctx, res())

    assert log.service_name == "orders"
    assert log.method == "POST"
    assert log.route == "/orders/{id}"
    assert log.status_code == 201
    assert log.duration_ms == 250.0
    assert log.timestamp == "1970-01-01T00:00:01.250Z"
    assert log.trace_id == ctx.trace_id
    assert log.request_id.startswith("req_")
    assert ctx.request_id == log.request_id

    span = only_span(exporter)
    assert span.kind == SpanKind.SERVER
    assert span.name == "POST /orders/{id}"
    assert span.start_time == 1_000 * 1_000_000
    assert span.end_time == 1_250 * 1_000_000
    attrs = span.attributes
    assert attrs["http.request.method"] == "POST"
    assert attrs["http.response.status_code"] == 201
    assert attrs["http.route"] == "/orders/{id}"
    assert attrs["url.path"] == "/orders/42"
    assert attrs["service.name"] == "orders"
    assert attrs["reqtrace.request.id"] == log.request_id
    assert attrs["http.request.header.content-type"] == ("application/json",)
    assert span.resource.attributes["service.version"] == "1.2.3"
    assert span.resource.attributes["deployment.environment.name"] == "test"
    assert "reqtrace: request completed" in logger.messages("debug")


def test_span_name_without_route():
    assert span_name("GET", None, "https://h/a/b?x=1") == "GET /a/b"
    assert span_name("GET", None, "/a?x=1") == "GET /a"
    assert span_name("", None, "") == "GET /"


def test_redaction_reaches_log_and_span():
    emitter, exporter, _ = make_emitter(
        redaction={"query_params": ["token"], "body_json_paths": ["$.card"]},
    )
    body = CapturedBody(bytes=17, encoding="utf8", truncated=False, value='{"card": "4111"}')
    ctx = emitter.start_request(req(body=body))
    log = emitter.end_request(ctx, res())

    assert log.url == "https://api.example.com/orders/42?token=%5BREDACTED%5D"
    assert log.request_headers["Authorization"] == "Bearer [REDACTED]"
    assert json.loads(log.request_body.value) == {"card": "[REDACTED]"}
    attrs = only_span(exporter).attributes
    assert attrs["url.full"] == log.url
    assert attrs["http.request.header.authorization"] == ("Bearer [REDACTED]",)
    assert "4111" not in attrs["reqtrace.request.body"]


def test_request_id_precedence():
    emitter, _, _ = make_emitter()

    ctx = emitter.start_request(req(request_id="  req_explicit "))
    assert ctx.request_id == "req_explicit"
    log = emitter.end_request(ctx, res(headers={"request-id": "from-response"}))
    assert log.request_id == "req_explicit"

    ctx = emitter.start_request(req())
    log = emitter.end_request(ctx, res(headers={"Request-Id": ["up-1", "up-2"]}))
    assert log.request_id == "up-1"

    ctx = emitter.start_request(req(), RequestOptions(request_id="opt-id"))
    assert emitter.end_request(ctx, res()).request_id == "opt-id"


def test_request_id_is_read_before_redaction():
    emitter, _, _ = make_emitter(redaction={"headers": ["request-id"]})
    ctx = emitter.start_request(req())
    log = emitter.end_request(ctx, res(headers={"request-id": "upstream-7"}))
    assert log.request_id == "upstream-7"
    assert log.response_headers["request-id"] == "[REDACTED]"


def test_set_request_id_and_route_after_start():
    emitter, exporter, _ = make_emitter()
    ctx = emitter.start_request(req(url="/orders/9"))
    emitter.set_route(ctx, "/orders/[id]")
    emitter.set_request_id(ctx, "late-id")
    log = emitter.end_request(ctx, res())
    assert log.request_id == "late-id"
    assert log.route == "/orders/{id}"
    assert only_span(exporter).name == "POST /orders/{id}"


def test_route_normalization_can_be_disabled():
    emitter, _, _ = make_emitter(route={"normalize": False})
    ctx = emitter.start_request(req(route="/orders/:id"))
    assert emitter.end_request(ctx, res()).route == "/orders/:id"


def test_duration_is_clamped():
    emitter, exporter, _ = make_emitter()
    ctx = emitter.start_request(req(start_time_ms=5_000.0))
    log = emitter.end_request(ctx, res(end_time_ms=4_000.0))
    assert log.duration_ms == 0
    span = only_span(exporter)
    assert span.end_time == span.start_time


def test_capture_switches():
    emitter, _, _ = make_emitter(
        capture={"request_headers": False, "response_headers": False, "request_body": "none"}
    )
    body = CapturedBody(bytes=2, encoding="utf8", truncated=False, value="{}")
    ctx = emitter.start_request(req(body=body))
    log = emitter.end_request(ctx, res(body=body))
    assert log.request_headers is None
    assert log.response_headers is None
    assert log.request_body is None
    assert log.response_body.value == "{}"


def test_per_request_overrides():
    emitter, _, _ = make_emitter()
    options = RequestOptions(capture={"response_body": "none"}, redaction={"headers": ["content-type"]})
    ctx = emitter.start_request(req(), options)
    body = CapturedBody(bytes=2, encoding="utf8", truncated=False, value="{}")
    log = emitter.end_request(ctx, res(body=body))
    assert log.response_body is None
    assert log.request_headers["Content-Type"] == "[REDACTED]"
    assert log.request_headers["Authorization"] == "Bearer abc"

    ctx = emitter.start_request(req())
    emitter.set_capture_override(ctx, {"request_headers": False})
    emitter.set_redaction_override(ctx, {"replacement": "<x>"})
    log = emitter.end_request(ctx, res())
    assert log.request_headers is None
    assert log.response_headers == {"Content-Type": "application/json"}
    with pytest.raises(ConfigError):
        emitter.set_capture_override(emitter.start_request(req()), {"request_body": "zip"})


def test_websocket_upgrade_drops_response_body():
    emitter, _, _ = make_emitter()
    ctx = emitter.start_request(req(method="GET"))
    body = CapturedBody(bytes=3, encoding="utf8", truncated=False, value="abc")
    log = emitter.end_request(ctx, res(status_code=101, headers={"Upgrade": "websocket"}, body=body))
    assert log.response_body is None


def test_body_capture_and_truncation_metrics():
    emitter, exporter, _ = make_emitter(capture={"max_body_bytes": 4})
    ctx = emitter.start_request(req())
    cap = emitter.body_capture(ctx, "request")
    cap.write(b"abcdefgh")
    out = emitter.body_capture(ctx, "response")
    assert list(out.wrap([b"ok"])) == [b"ok"]
    log = emitter.end_request(ctx, res())

    assert log.request_body.value == "abcd"
    assert log.request_body.bytes == 8
    assert log.request_body.truncated
    assert log.response_body.value == "ok"
    assert only_span(exporter).attributes["reqtrace.request.body.truncated"] is True
    sample = emitter.metrics.registry.get_sample_value
    assert sample("reqtrace_body_truncated_total", {"direction": "request"}) == 1.0
    assert sample("reqtrace_requests_total", {"method": "POST", "code": "201"}) == 1.0


def test_attach_request_body_bytes():
    emitter, _, _ = make_emitter(capture={"request_body": "base64", "max_body_bytes": 2})
    ctx = emitter.start_request(req())
    emitter.attach_request_body(ctx, b"\x00\x01\x02")
    log = emitter.end_request(ctx, res())
    assert log.request_body.encoding == "base64"
    assert log.request_body.value == "AAE="
    assert log.request_body.truncated


def test_context_mutations():
    emitter, exporter, _ = make_emitter()
    ctx = emitter.start_request(req())
    ctx.set_actor("tenant-1", "user-9")
    ctx.set_session_id("sess-3")
    ctx.set_attribute("plan", "pro")
    ctx.add_event("cache.miss", {"key": "k"})
    log = emitter.end_request(ctx, res())

    assert log.tenant_id == "tenant-1"
    assert log.user_id == "user-9"
    assert log.session_id == "sess-3"
    assert log.attributes == {"plan": "pro"}
    span = only_span(exporter)
    assert span.attributes["reqtrace.tenant.id"] == "tenant-1"
    assert span.attributes["user.id"] == "user-9"
    assert span.attributes["reqtrace.session.id"] == "sess-3"
    assert span.attributes["plan"] == "pro"
    assert [e.name for e in span.events] == ["cache.miss"]


def test_mutations_after_finish_are_noops():
    emitter, exporter, _ = make_emitter()
    ctx = emitter.start_request(req())
    first = emitter.end_request(ctx, res())
    ctx.set_attribute("late", True)
    ctx.set_user_id("ghost")
    emitter.set_route(ctx, "/late")

    second = emitter.end_request(ctx, res())
    assert second.method == "UNKNOWN"
    assert second.url == ""
    assert second.duration_ms == 0
    assert second.request_id == first.request_id
    assert "late" not in only_span(exporter).attributes
    assert emitter.active_requests() == 0


def test_foreign_context_is_ignored():
    a, _, _ = make_emitter()
    b, exporter_b, _ = make_emitter()
    ctx = a.start_request(req())
    log = b.end_request(ctx, res())
    assert log.method == "UNKNOWN"
    assert exporter_b.get_finished_spans() == ()
    assert a.end_request(ctx, res()).method == "POST"


def test_errors():
    emitter, exporter, _ = make_emitter()
    ctx = emitter.start_request(req())
    ctx.set_error(RuntimeError("db down"))
    log = emitter.end_request(ctx, res(status_code=500))
    assert log.error.message == "db down"
    assert log.error.type == "RuntimeError"
    span = only_span(exporter)
    assert span.status.status_code == StatusCode.ERROR
    assert span.events[0].name == "exception"

    ctx = emitter.start_request(req())
    log = emitter.end_request(ctx, res(status_code=500), "upstream timeout")
    assert log.error.message == "upstream timeout"
    assert log.error.type is None


def test_hooks_order_and_failures():
    seen = []

    def on_request(ctx, request):
        seen.append(("request", request.method))

    def on_error(log, err):
        seen.append(("error", str(err)))
        raise RuntimeError("hook bug")

    def on_response(log):
        seen.append(("response", log.status_code))
        raise RuntimeError("hook bug")

    emitter, exporter, logger = make_emitter()
    emitter.hooks = RequestHooks(on_request=on_request, on_response=on_response, on_error=on_error)
    ctx = emitter.start_request(req())
    log = emitter.end_request(ctx, res(status_code=502), ValueError("bad gateway"))

    assert log.status_code == 502
    assert seen == [("request", "POST"), ("error", "bad gateway"), ("response", 502)]
    assert "reqtrace: on_response hook failed" in logger.messages("warn")
    sample = emitter.metrics.registry.get_sample_value
    assert sample("reqtrace_hook_failures_total", {"hook": "on_error"}) == 1.0
    assert sample("reqtrace_hook_failures_total", {"hook": "on_response"}) == 1.0
    assert len(exporter.get_finished_spans()) == 1


def test_on_error_skipped_without_error():
    calls = []
    emitter, _, _ = make_emitter()
    hooks = RequestHooks(on_error=lambda log, err: calls.append("error"), on_response=lambda log: calls.append("ok"))
    ctx = emitter.start_request(req(), RequestOptions(hooks=hooks))
    emitter.end_request(ctx, res())
    assert calls == ["ok"]


def test_client_address_ignores_redacted_forwarding_header():
    emitter, exporter, _ = make_emitter(redaction={"headers": ["authorization", "x-forwarded-for"]})
    headers = {"X-Forwarded-For": "203.0.113.9", "Authorization": "Bearer abc"}
    ctx = emitter.start_request(req(headers=headers, remote_address="192.0.2.10:5555"))
    emitter.end_request(ctx, res())
    assert only_span(exporter).attributes["client.address"] == "192.0.2.10"

    emitter, exporter, _ = make_emitter()
    ctx = emitter.start_request(req(headers=headers, remote_address="192.0.2.10"))
    emitter.end_request(ctx, res())
    assert only_span(exporter).attributes["client.address"] == "203.0.113.9"


def test_drop_flag_suppresses_export():
    emitter, exporter, _ = make_emitter()
    ctx = emitter.start_request(req())
    ctx.set_attribute(ATTR_SPAN_DROP, True)
    log = emitter.end_request(ctx, res())
    assert log.status_code == 201
    assert exporter.get_finished_spans() == ()


def test_bind_object_lookup():
    class Native:
        pass

    class Wrapper:
        def __init__(self, raw):
            self.raw = raw

    emitter, _, _ = make_emitter()
    native = Native()
    ctx = emitter.start_request(req())
    emitter.bind_object(native, ctx)
    assert emitter.context_for(native) is ctx
    assert emitter.context_for(Wrapper(native)) is ctx
    assert emitter.context_for({"request": Wrapper(native)}) is ctx
    assert emitter.context_for(Native()) is None
    emitter.end_request(ctx, res())
    assert emitter.context_for(native) is None


def test_deferred_end_merges_late_bodies_before_hooks():
    seen = {}

    async def on_response(log):
        seen["body"] = log.response_body.value

    async def late_body():
        await asyncio.sleep(0)
        return CapturedBody(bytes=5, encoding="utf8", truncated=False, value="later")

    async def late_failure():
        raise OSError("client went away")

    emitter, exporter, logger = make_emitter()
    hooks = RequestHooks(on_response=on_response)

    async def run():
        ctx = emitter.start_request(req(), RequestOptions(hooks=hooks))
        return await emitter.end_request_deferred(
            ctx, res(), request_body=late_failure(), response_body=late_body()
        )

    log = asyncio.run(run())
    assert seen == {"body": "later"}
    assert log.response_body.value == "later"
    assert log.request_body is None
    assert "reqtrace: deferred body failed" in logger.messages("warn")
    assert len(exporter.get_finished_spans()) == 1


def test_failing_route_normalizer_falls_back_to_raw_route():
    def normalizer(route):
        raise RuntimeError("boom")

    emitter, exporter, logger = make_emitter(route={"normalizer": normalizer})
    ctx = emitter.start_request(req(route="/orders/:id"))
    log = emitter.end_request(ctx, res())

    assert log.route == "/orders/:id"
    assert only_span(exporter).name == "POST /orders/:id"
    assert emitter.active_requests() == 0
    assert "reqtrace: route normalizer failed" in logger.messages("warn")
    sample = emitter.metrics.registry.get_sample_value
    assert sample("reqtrace_hook_failures_total", {"hook": "route_normalizer"}) == 2.0


def test_normalizer_failing_only_at_finish_still_ends_span():
    calls = []

    def normalizer(route):
        calls.append(route)
        if len(calls) > 1:
            raise RuntimeError("boom")
        return "/orders/{id}"

    emitter, exporter, _ = make_emitter(route={"normalizer": normalizer})
    ctx = emitter.start_request(req(route="/orders/:id"))
    log = emitter.end_request(ctx, res())
    assert log.route == "/orders/{id}"
    assert only_span(exporter).attributes["http.route"] == "/orders/{id}"
    assert emitter.active_requests() == 0


class BrokenSpan:
    def set_attribute(self, key, value):
        raise RuntimeError("span closed")

    def add_event(self, name, attributes=None):
        raise RuntimeError("span closed")


def test_span_update_failures_are_logged_and_counted():
    emitter, exporter, logger = make_emitter()
    ctx = emitter.start_request(req())
    state = emitter._registry.get(ctx)
    real_span, state.span = state.span, BrokenSpan()

    ctx.set_attribute("k", "v")
    ctx.add_event("cache.miss")
    ctx.set_user_id("u-1")

    assert logger.messages("warn").count("reqtrace: span update failed") == 3
    assert emitter.metrics.registry.get_sample_value("reqtrace_span_failures_total") == 3.0

    state.span = real_span
    log = emitter.end_request(ctx, res())
    assert log.user_id == "u-1"
    assert only_span(exporter).attributes["user.id"] == "u-1"


def test_deferred_raw_bytes_follow_capture_policy():
    async def late_bytes():
        return b"abcdefgh"

    emitter, exporter, _ = make_emitter(capture={"max_body_bytes": 4, "request_body": "base64"})

    async def run():
        ctx = emitter.start_request(req())
        return await emitter.end_request_deferred(
            ctx, res(), request_body=late_bytes(), response_body=b"\xff\x00ok!"
        )

    log = asyncio.run(run())
    assert log.request_body.encoding == "base64"
    assert log.request_body.value == "YWJjZA=="
    assert log.request_body.bytes == 8
    assert log.request_body.truncated
    assert isinstance(log.response_body, CapturedBody)
    assert log.response_body.bytes == 5
    assert log.response_body.truncated
    sample = emitter.metrics.registry.get_sample_value
    assert sample("reqtrace_body_truncated_total", {"direction": "request"}) == 1.0
    assert only_span(exporter).attributes["reqtrace.request.body.truncated"] is True


def test_deferred_body_of_unknown_type_is_ignored():
    async def late_number():
        return 42

    emitter, exporter, logger = make_emitter()

    async def run():
        ctx = emitter.start_request(req())
        return await emitter.end_request_deferred(ctx, res(), request_body=late_number(), response_body="text")

    log = asyncio.run(run())
    assert log.request_body is None
    assert log.response_body is None
    assert logger.messages("warn").count("reqtrace: deferred body ignored") == 2
    assert len(exporter.get_finished_spans()) == 1


def test_async_hook_in_sync_path_is_not_left_pending():
    async def on_response(log):
        raise AssertionError("never awaited")

    emitter, _, logger = make_emitter()
    emitter.hooks = RequestHooks(on_response=on_response)
    emitter.end_request(emitter.start_request(req()), res())
    assert "reqtrace: async on_response hook needs end_request_deferred()" in logger.messages("warn")


def test_flush_and_shutdown():
    emitter, exporter, _ = make_emitter()
    with emitter:
        emitter.end_request(emitter.start_request(req()), res())
        assert emitter.flush()
    emitter.shutdown()
    assert len(exporter.get_finished_spans()) == 1


def test_missing_start_time_is_filled_in():
    emitter, _, _ = make_emitter()
    request = req(start_time_ms=None)
    ctx = emitter.start_request(request)
    assert request.start_time_ms is not None
    log = emitter.end_request(ctx, res(end_time_ms=None))
    assert log.duration_ms >= 0


def test_create_emitter_factory():
    exporter = InMemorySpanExporter()
    emitter = create_emitter(
        {"service_name": "svc", "endpoint_url": "https://c", "exporter": {"span_processor": "simple"}},
        exporter,
    )
    emitter.end_request(emitter.start_request(req()), res())
    assert len(exporter.get_finished_spans()) == 1
    with pytest.raises(ConfigError) as exc:
        create_emitter({"service_name": "svc", "endpoint_url": "https://c", "capture": {"response_body": "raw"}})
    assert exc.value.code == "INVALID_CONFIG"
