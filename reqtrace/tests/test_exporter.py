# reqtrace/tests/test_exporter.py
import io
import json
from contextlib import redirect_stdout

from opentelemetry.sdk.trace.export import SpanExportResult
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from reqtrace.emitter import Emitter
from reqtrace.exporter import JsonLineExporterConfig, JsonLineSpanExporter
from reqtrace.types import NormalizedRequest, NormalizedResponse

CFG = {
    "service_name": "billing",
    "endpoint_url": "https://collector.example.com",
    "exporter": {"span_processor": "simple"},
}


def _run_one(exporter, **req_kw):
    emitter = Emitter(CFG, exporter)
    ctx = emitter.start_request(
        NormalizedRequest(method="GET", url="/invoices/7", route="/invoices/:id", start_time_ms=10.0, **req_kw)
    )
    ctx.add_event("db.query", {"table": "invoices"})
    emitter.end_request(ctx, NormalizedResponse(status_code=200, end_time_ms=12.0))
    emitter.shutdown()


def test_records_are_written_to_sink():
    records = []
    exporter = JsonLineSpanExporter(
        JsonLineExporterConfig(sink=records.append, resource_attributes={"team": "payments"})
    )
    _run_one(exporter)

    assert len(records) == 1
    rec = records[0]
    assert rec["type"] == "span"
    assert rec["name"] == "GET /invoices/{id}"
    assert rec["kind"] == "SERVER"
    assert len(rec["trace_id"]) == 32
    assert len(rec["span_id"]) == 16
    assert rec["parent_span_id"] is None
    assert rec["end_unix_nano"] - rec["start_unix_nano"] == 2_000_000
    assert rec["status"] == "UNSET"
    assert rec["attributes"]["http.route"] == "/invoices/{id}"
    assert rec["resource"]["service.name"] == "billing"
    assert rec["resource"]["team"] == "payments"
    assert rec["events"][0]["name"] == "db.query"
    json.dumps(rec)


def test_long_values_are_truncated():
    records = []
    exporter = JsonLineSpanExporter(JsonLineExporterConfig(sink=records.append, max_attr_len=8))
    _run_one(exporter, headers={"X-Long": "abcdefghijklmnop"})
    attrs = records[0]["attributes"]
    assert attrs["http.request.header.x-long"] == ["abcdefgh..."]


def test_default_sink_prints_json_lines():
    out = io.StringIO()
    with redirect_stdout(out):
        _run_one(JsonLineSpanExporter())
    line = out.getvalue().strip()
    assert json.loads(line)["name"] == "GET /invoices/{id}"


def test_failing_sink_and_closed_exporter():
    memory = InMemorySpanExporter()
    _run_one(memory)
    spans = memory.get_finished_spans()

    def broken(rec):
        raise IOError("disk full")

    exporter = JsonLineSpanExporter(JsonLineExporterConfig(sink=broken))
    assert exporter.export(spans) == SpanExportResult.FAILURE
    assert exporter.export([]) == SpanExportResult.SUCCESS
    exporter.shutdown()
    assert exporter.export(spans) == SpanExportResult.FAILURE
    assert exporter.force_flush()
