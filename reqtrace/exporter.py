# FILE: reqtrace/exporter.py
from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence

from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult

JsonDict = Dict[str, Any]
SinkFn = Callable[[JsonDict], None]


@dataclass
class JsonLineExporterConfig:
    """
    Configuration for JsonLineSpanExporter.

      - sink receives one dict per span; None prints compact JSON lines;
      - resource_attributes are merged under each record's "resource";
      - max_attr_len truncates string attribute values (0 disables).
    """

    sink: Optional[SinkFn] = None
    resource_attributes: Dict[str, Any] = field(default_factory=dict)
    max_attr_len: int = 0


class JsonLineSpanExporter(SpanExporter):
    """
    SpanExporter that writes finished spans as JSON records.

    Meant for local debugging and tests where running a collector is
    overkill; plug it into Emitter(config, exporter=JsonLineSpanExporter()).
    A failing sink never raises into the span processor.
    """

    def __init__(self, config: Optional[JsonLineExporterConfig] = None) -> None:
        self._cfg = config or JsonLineExporterConfig()
        if self._cfg.sink is None:
            # Default sink: print JSON lines.
            self._cfg.sink = lambda rec: print(json.dumps(rec, ensure_ascii=False, separators=(",", ":")))
        # Serializes writes to the sink.
        self._lock = threading.Lock()
        self._closed = False

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        if self._closed:
            return SpanExportResult.FAILURE
        ok = True
        for span in spans:
            rec = self._record(span)
            with self._lock:
                try:
                    self._cfg.sink(rec)
                except Exception:
                    ok = False
        return SpanExportResult.SUCCESS if ok else SpanExportResult.FAILURE

    def shutdown(self) -> None:
        self._closed = True

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _truncate(self, value: Any) -> Any:
        n = self._cfg.max_attr_len
        if n > 0 and isinstance(value, str) and len(value) > n:
            return value[:n] + "..."
        return value

    def _record(self, span: ReadableSpan) -> JsonDict:
        ctx = span.context
        parent = span.parent
        resource = dict(span.resource.attributes) if span.resource is not None else {}
        for k, v in self._cfg.resource_attributes.items():
            resource.setdefault(k, v)

        attrs: JsonDict = {}
        for k, v in (span.attributes or {}).items():
            attrs[k] = [self._truncate(x) for x in v] if isinstance(v, tuple) else self._truncate(v)

        rec: JsonDict = {
            "type": "span",
            "name": span.name,
            "kind": span.kind.name if span.kind is not None else None,
            "trace_id": format(ctx.trace_id, "032x") if ctx else None,
            "span_id": format(ctx.span_id, "016x") if ctx else None,
            "parent_span_id": format(parent.span_id, "016x") if parent else None,
            "start_unix_nano": span.start_time,
            "end_unix_nano": span.end_time,
            "status": span.status.status_code.name,
            "attributes": attrs,
            "resource": resource,
        }
        if span.status.description:
            rec["status_description"] = span.status.description
        if span.events:
            rec["events"] = [
                {
                    "name": ev.name,
                    "time_unix_nano": ev.timestamp,
                    "attributes": {k: self._truncate(v) for k, v in (ev.attributes or {}).items()},
                }
                for ev in span.events
            ]
        return rec
