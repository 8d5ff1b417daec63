"""
OpenTelemetry tracing for the topic pipeline.

Trace context travels with queued jobs: ``inject_trace_context()`` encodes
the W3C traceparent into the job's stream fields when a trigger enqueues
work, and the worker resumes the trace with ``extract_trace_context()``.
This connects the HTTP/CLI/scheduler trigger span with the pipeline run
that executes later in a worker process.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace import StatusCode, Tracer
from opentelemetry.trace.propagation import get_current_span
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

# W3C trace context keys carried in job fields
TRACE_FIELDS = ("traceparent", "tracestate")

_propagator = TraceContextTextMapPropagator()


def setup_tracing(
    service_name: str,
    otlp_endpoint: str | None = None,
    *,
    exporter: SpanExporter | None = None,
) -> TracerProvider:
    """
    Initialize the OpenTelemetry TracerProvider.

    Uses the OTLP gRPC exporter unless a custom exporter is passed
    (e.g. InMemorySpanExporter in tests).
    """
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    if exporter is None:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )

        exporter = OTLPSpanExporter(
            endpoint=otlp_endpoint or "http://localhost:4317",
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    logger.info(
        "OpenTelemetry tracing initialized: service=%s endpoint=%s",
        service_name,
        otlp_endpoint or "(custom exporter)",
    )
    return provider


def get_tracer(name: str) -> Tracer:
    """Get a named tracer. Returns a no-op tracer when tracing is disabled."""
    return trace.get_tracer(name)


def inject_trace_context() -> dict[str, str]:
    """
    Current trace context as job fields.

    Empty without an active span, so untraced enqueues add no fields.
    """
    carrier: dict[str, str] = {}
    _propagator.inject(carrier)
    return carrier


def trace_fields_from(fields: dict[str, str]) -> dict[str, str]:
    """The trace context keys present in a job record or stream message."""
    return {key: fields[key] for key in TRACE_FIELDS if fields.get(key)}


def extract_trace_context(fields: dict[str, str]) -> Context | None:
    """
    Trace context of the enqueuing span, or None.

    A missing or malformed traceparent starts a new trace instead.
    """
    if not fields.get("traceparent"):
        return None
    ctx = _propagator.extract(trace_fields_from(fields))
    if not get_current_span(ctx).get_span_context().is_valid:
        logger.debug(f"Ignoring invalid traceparent: {fields['traceparent']}")
        return None
    return ctx


@contextmanager
def traced(
    tracer: Tracer,
    name: str,
    attributes: dict[str, Any] | None = None,
    parent_context: Context | None = None,
):
    """
    Create a span and record any exception raised inside it.

    Usage:
        tracer = get_tracer("orchestrator")
        with traced(tracer, "process_topic", {"topic.slug": slug}):
            ...
    """
    kwargs: dict[str, Any] = {}
    if parent_context is not None:
        kwargs["context"] = parent_context

    with tracer.start_as_current_span(name, **kwargs) as span:
        if attributes:
            for k, v in attributes.items():
                span.set_attribute(k, v)
        try:
            yield span
        except Exception as exc:
            span.set_status(StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise


def add_trace_context(
    logger_: Any, method: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor that adds trace_id/span_id of the active span."""
    span = get_current_span()
    ctx = span.get_span_context()

    if ctx.is_valid:
        event_dict["trace_id"] = f"{ctx.trace_id:032x}"
        event_dict["span_id"] = f"{ctx.span_id:016x}"

    return event_dict
