"""
W3C Trace Context propagation

The trace context travels with every unit of work:

    HTTP request (traceparent header) -> TracingMiddleware -> contextvars
      -> outbound httpx calls (traceparent header)
      -> outbox row (trace_id / span_id columns) -> Kafka header
      -> escrow consumer -> contextvars

traceparent format: 00-{trace_id:32 hex}-{span_id:16 hex}-{flags:2 hex}
"""

import secrets
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional

import structlog

trace_id_var: ContextVar[Optional[str]] = ContextVar("trace.id", default=None)
span_id_var: ContextVar[Optional[str]] = ContextVar("span.id", default=None)
parent_span_id_var: ContextVar[Optional[str]] = ContextVar(
    "parent_span_id", default=None
)

TRACEPARENT = "traceparent"


def generate_trace_id() -> str:
    return secrets.token_bytes(16).hex()


def generate_span_id() -> str:
    return secrets.token_bytes(8).hex()


def _is_hex(value: str, length: int) -> bool:
    if len(value) != length or value == "0" * length:
        return False
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


@dataclass
class TraceContext:
    trace_id: str
    span_id: str
    parent_span_id: Optional[str] = None
    sampled: bool = True
    version: str = "00"

    def to_traceparent_header(self) -> str:
        trace_flags = "01" if self.sampled else "00"
        return f"{self.version}-{self.trace_id}-{self.span_id}-{trace_flags}"

    @classmethod
    def from_traceparent_header(cls, header_value: str) -> Optional["TraceContext"]:
        """
        Parse an incoming traceparent and open a child span.

        The caller's span id becomes our parent; a fresh span id is generated.
        Returns None for anything malformed or for versions other than 00.
        """
        parts = header_value.strip().split("-")
        if len(parts) != 4:
            return None

        version, trace_id, caller_span_id, trace_flags = parts
        if version != "00":
            return None
        if not _is_hex(trace_id, 32) or not _is_hex(caller_span_id, 16):
            return None
        try:
            sampled = (int(trace_flags, 16) & 0x01) == 0x01
        except ValueError:
            return None

        return cls(
            trace_id=trace_id,
            span_id=generate_span_id(),
            parent_span_id=caller_span_id,
            sampled=sampled,
            version=version,
        )


def create_trace_context(
    trace_id: Optional[str] = None,
    parent_span_id: Optional[str] = None,
    sampled: bool = True,
) -> TraceContext:
    """Start a new trace, or continue `trace_id` with a new span."""
    return TraceContext(
        trace_id=trace_id or generate_trace_id(),
        span_id=generate_span_id(),
        parent_span_id=parent_span_id,
        sampled=sampled,
    )


def set_trace_context(context: TraceContext) -> None:
    trace_id_var.set(context.trace_id)
    span_id_var.set(context.span_id)
    parent_span_id_var.set(context.parent_span_id)


def get_trace_context() -> Optional[TraceContext]:
    trace_id = trace_id_var.get()
    if not trace_id:
        return None
    return TraceContext(
        trace_id=trace_id,
        span_id=span_id_var.get() or generate_span_id(),
        parent_span_id=parent_span_id_var.get(),
    )


def clear_trace_context() -> None:
    trace_id_var.set(None)
    span_id_var.set(None)
    parent_span_id_var.set(None)


def bind_trace_context(context: TraceContext, **extra: object) -> None:
    """Make `context` current and bind it into structlog's contextvars."""
    set_trace_context(context)
    structlog.contextvars.bind_contextvars(
        **{"trace.id": context.trace_id},
        **{"span.id": context.span_id},
        parent_span_id=context.parent_span_id,
        **extra,
    )


def unbind_trace_context() -> None:
    structlog.contextvars.clear_contextvars()
    clear_trace_context()


def outbound_trace_headers() -> dict[str, str]:
    """traceparent header for outbound HTTP calls, empty outside a trace"""
    context = get_trace_context()
    if context is None:
        return {}
    return {TRACEPARENT: context.to_traceparent_header()}


# Kafka headers are (str, bytes) pairs


def inject_trace_context_to_kafka_headers(
    headers: list[tuple[str, bytes]] | None = None,
    context: Optional[TraceContext] = None,
) -> list[tuple[str, bytes]]:
    headers = list(headers or [])
    context = context or get_trace_context()
    if context:
        headers.append((TRACEPARENT, context.to_traceparent_header().encode("utf-8")))
    return headers


def extract_trace_context_from_kafka_headers(
    headers: list[tuple[str, bytes]] | tuple | None,
) -> Optional[TraceContext]:
    for key, value in headers or ():
        if key == TRACEPARENT and value:
            return TraceContext.from_traceparent_header(value.decode("utf-8"))
    return None
