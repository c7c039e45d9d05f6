# FILE: reqtrace/metrics.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Histogram

# Anything else is reported as OTHER to keep label cardinality bounded.
_KNOWN_METHODS = frozenset({"GET", "HEAD", "POST", "PUT", "DELETE", "CONNECT", "OPTIONS", "TRACE", "PATCH"})


@dataclass
class MetricsConfig:
    # Histogram buckets in seconds.
    latency_buckets: Tuple[float, ...] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
    enable: bool = True
    # None gives every emitter its own registry, so several emitters can
    # coexist in one process without duplicate-timeseries errors.
    registry: Optional[CollectorRegistry] = None


class EmitterMetrics:
    """
    Prometheus instruments for one Emitter.

      - reqtrace_requests_total{method,code}
      - reqtrace_request_duration_seconds{method}
      - reqtrace_body_truncated_total{direction}
      - reqtrace_span_failures_total
      - reqtrace_hook_failures_total{hook}

    With enable=False every record_* call is a no-op.
    """

    def __init__(self, cfg: Optional[MetricsConfig] = None):
        cfg = cfg or MetricsConfig()
        self.enabled = bool(cfg.enable)
        if not self.enabled:
            # No-op placeholders
            self.registry = None
            self.req_ctr = self.latency = self.truncated = self.span_fail = self.hook_fail = None
            return

        self.registry = cfg.registry if cfg.registry is not None else CollectorRegistry()
        self.req_ctr = Counter(
            "reqtrace_requests_total", "Finished requests", ["method", "code"], registry=self.registry
        )
        self.latency = Histogram(
            "reqtrace_request_duration_seconds",
            "Request duration as recorded in the request log",
            ["method"],
            buckets=cfg.latency_buckets,
            registry=self.registry,
        )
        self.truncated = Counter(
            "reqtrace_body_truncated_total", "Captured bodies cut at the byte limit", ["direction"], registry=self.registry
        )
        self.span_fail = Counter(
            "reqtrace_span_failures_total", "Span updates and finalizations that raised", registry=self.registry
        )
        self.hook_fail = Counter(
            "reqtrace_hook_failures_total", "Caller hooks that raised", ["hook"], registry=self.registry
        )

    def record_request(self, method: str, status_code: Optional[int], duration_ms: float) -> None:
        if not self.enabled:
            return
        method = method.upper() if method.upper() in _KNOWN_METHODS else "OTHER"
        code = str(status_code) if status_code is not None else "none"
        self.req_ctr.labels(method, code).inc()
        self.latency.labels(method).observe(max(0.0, duration_ms) / 1000.0)

    def record_truncated(self, direction: str) -> None:
        if self.enabled:
            self.truncated.labels(direction).inc()

    def record_span_failure(self) -> None:
        if self.enabled:
            self.span_fail.inc()

    def record_hook_failure(self, hook: str) -> None:
        if self.enabled:
            self.hook_fail.labels(hook).inc()
