# FILE: reqtrace/state.py
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from opentelemetry.trace import Span

from .attributes import set_tenant_id_attribute, set_user_id_attribute
from .buffer import BodyCapture
from .otel import span_status_from_error
from .types import AttributeValue, NormalizedRequest

_log = logging.getLogger(__name__)

# Attributes looked through when an adapter hands over a wrapper object.
_NESTED_TARGETS: Tuple[str, ...] = ("raw", "req", "request")


@dataclass
class RequestHooks:
    """
    Caller callbacks.

      - on_request(ctx, request) right after start_request();
      - on_error(log, error) before on_response, only when an error was captured;
      - on_response(log) once the final, redacted log exists.

    A hook that raises is logged and otherwise ignored.
    """

    on_request: Optional[Callable[..., Any]] = None
    on_response: Optional[Callable[..., Any]] = None
    on_error: Optional[Callable[..., Any]] = None


@dataclass
class RequestState:
    """Mutable per-request record; every access goes through `lock`."""

    request: NormalizedRequest
    span: Optional[Span]
    context: "RequestContext"
    hooks: RequestHooks = field(default_factory=RequestHooks)
    attributes: Dict[str, AttributeValue] = field(default_factory=dict)
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    error: Any = None
    capture_override: Optional[Dict[str, Any]] = None
    redaction_override: Optional[Dict[str, Any]] = None
    request_capture: Optional[BodyCapture] = None
    response_capture: Optional[BodyCapture] = None
    finished: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class StateRegistry:
    """
    Handle -> RequestState table for one emitter.

    Contexts carry an integer handle instead of owning their state, so a
    finished request's state is gone the moment release() runs. Objects an
    adapter wants to find the context from later (its native request, say)
    are bound by identity and dropped together with the handle.

    `on_span_failure(exc)` is told about span updates from context mutators
    that raised; without it they are logged here at warning.
    """

    def __init__(self, on_span_failure: Optional[Callable[[Exception], None]] = None) -> None:
        self._on_span_failure = on_span_failure
        self._lock = threading.Lock()
        self._next = itertools.count(1)
        self._states: Dict[int, RequestState] = {}
        # id(obj) -> (obj, handle); holding obj keeps its id from being reused.
        self._objects: Dict[int, Tuple[Any, int]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def new_handle(self) -> int:
        with self._lock:
            return next(self._next)

    def register(self, handle: int, state: RequestState) -> None:
        with self._lock:
            self._states[handle] = state

    def get(self, ctx: "RequestContext") -> Optional[RequestState]:
        if ctx is None or ctx._registry is not self:
            return None
        with self._lock:
            state = self._states.get(ctx.handle)
        if state is None or state.context is not ctx:
            return None
        return state

    def release(self, ctx: "RequestContext") -> Optional[RequestState]:
        """Remove and return the state; only the first caller gets it."""
        if ctx is None or ctx._registry is not self:
            return None
        with self._lock:
            state = self._states.get(ctx.handle)
            if state is None or state.context is not ctx:
                return None
            del self._states[ctx.handle]
            for key in [k for k, (_, h) in self._objects.items() if h == ctx.handle]:
                del self._objects[key]
        return state

    def span_failed(self, exc: Exception) -> None:
        if self._on_span_failure is None:
            _log.warning("reqtrace: span update failed: %s", exc)
            return
        try:
            self._on_span_failure(exc)
        except Exception:
            _log.warning("reqtrace: span failure callback raised", exc_info=True)

    def bind_object(self, target: Any, ctx: "RequestContext") -> None:
        if target is None or self.get(ctx) is None:
            return
        with self._lock:
            self._objects[id(target)] = (target, ctx.handle)

    def context_for(self, target: Any) -> Optional["RequestContext"]:
        """
        Context bound to `target`, or to the adapter object nested in it
        under ``raw``, ``req`` / ``req.raw`` or ``request`` / ``request.raw``.
        """
        if target is None:
            return None
        for candidate in _candidates(target):
            with self._lock:
                entry = self._objects.get(id(candidate))
                state = self._states.get(entry[1]) if entry is not None and entry[0] is candidate else None
            if state is not None:
                return state.context
        return None


def _candidates(target: Any) -> List[Any]:
    out = [target]
    for name in _NESTED_TARGETS:
        inner = _attr(target, name)
        if inner is None:
            continue
        if name != "raw":
            raw = _attr(inner, "raw")
            if raw is not None:
                out.append(raw)
        out.append(inner)
        break
    return out


def _attr(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        value = obj.get(name)
    else:
        value = getattr(obj, name, None)
    if value is None or isinstance(value, (str, bytes, int, float, bool)):
        return None
    return value


class RequestContext:
    """
    Handle returned by Emitter.start_request().

    `request_id` is the explicit id known at start (empty otherwise) and is
    replaced by the resolved id when the request finishes. All mutators are
    no-ops once the request has finished, or when the context belongs to a
    different emitter.
    """

    __slots__ = ("handle", "request_id", "trace_id", "span_id", "_registry")

    def __init__(
        self,
        handle: int,
        registry: StateRegistry,
        *,
        request_id: str = "",
        trace_id: Optional[str] = None,
        span_id: Optional[str] = None,
    ) -> None:
        self.handle = handle
        self.request_id = request_id
        self.trace_id = trace_id
        self.span_id = span_id
        self._registry = registry

    def __repr__(self) -> str:
        return f"RequestContext(handle={self.handle}, request_id={self.request_id!r})"

    def _mutate(self, fn: Callable[[RequestState], None]) -> None:
        state = self._registry.get(self)
        if state is None:
            return
        with state.lock:
            if state.finished:
                return
            fn(state)

    def set_actor(self, tenant_id: str, user_id: Optional[str] = None) -> None:
        def apply(state: RequestState) -> None:
            state.tenant_id = tenant_id
            if tenant_id:
                self._span_call(state.span, set_tenant_id_attribute, state.span, tenant_id)
            if user_id:
                state.user_id = user_id
                self._span_call(state.span, set_user_id_attribute, state.span, user_id)

        self._mutate(apply)

    def set_user_id(self, user_id: str) -> None:
        def apply(state: RequestState) -> None:
            state.user_id = user_id
            if user_id:
                self._span_call(state.span, set_user_id_attribute, state.span, user_id)

        self._mutate(apply)

    def set_session_id(self, session_id: str) -> None:
        def apply(state: RequestState) -> None:
            state.session_id = session_id

        self._mutate(apply)

    def set_attribute(self, key: str, value: AttributeValue) -> None:
        def apply(state: RequestState) -> None:
            state.attributes[key] = value
            if state.span is not None:
                self._span_call(state.span, state.span.set_attribute, key, value)

        self._mutate(apply)

    def add_event(self, name: str, attributes: Optional[Dict[str, AttributeValue]] = None) -> None:
        def apply(state: RequestState) -> None:
            if state.span is not None:
                self._span_call(state.span, state.span.add_event, name, attributes)

        self._mutate(apply)

    def set_error(self, err: Any) -> None:
        def apply(state: RequestState) -> None:
            state.error = err
            self._span_call(state.span, span_status_from_error, state.span, err)

        self._mutate(apply)


    def _span_call(self, span: Optional[Span], fn: Callable[..., Any], *args: Any) -> None:
        if span is None:
            return
        try:
            fn(*args)
        except Exception as exc:
            self._registry.span_failed(exc)
