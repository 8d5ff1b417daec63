"""Tests for trace context propagation through queued jobs."""

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace.propagation import get_current_span

from topic_tracker.observability.tracing import (
    extract_trace_context,
    inject_trace_context,
    trace_fields_from,
    traced,
)

TRACEPARENT = "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"


@pytest.fixture
def tracer():
    return TracerProvider().get_tracer("test")


class TestPropagation:
    def test_no_active_span_injects_nothing(self):
        assert inject_trace_context() == {}

    def test_round_trip_keeps_trace_id(self, tracer):
        with tracer.start_as_current_span("enqueue") as span:
            fields = inject_trace_context()
            trace_id = span.get_span_context().trace_id

        assert fields["traceparent"].startswith(f"00-{trace_id:032x}-")

        ctx = extract_trace_context({"job_id": "job-1", **fields})
        assert get_current_span(ctx).get_span_context().trace_id == trace_id

    def test_worker_span_is_child_of_enqueue(self, tracer):
        ctx = extract_trace_context({"traceparent": TRACEPARENT})

        with traced(tracer, "job.process", {"topic.slug": "python-releases"}, parent_context=ctx) as span:
            assert span.get_span_context().trace_id == int("0af7651916cd43dd8448eb211c80319c", 16)
            assert span.parent.span_id == int("b7ad6b7169203331", 16)

    def test_missing_or_malformed(self):
        assert extract_trace_context({}) is None
        assert extract_trace_context({"traceparent": "not-a-traceparent"}) is None

    def test_trace_fields_from_record(self):
        record = {"job_id": "job-1", "traceparent": TRACEPARENT, "tracestate": "", "kind": "process"}
        assert trace_fields_from(record) == {"traceparent": TRACEPARENT}


class TestTraced:
    def test_records_exception(self, tracer):
        with pytest.raises(RuntimeError):
            with traced(tracer, "revert_topic") as span:
                raise RuntimeError("boom")

        assert not span.status.is_ok
        assert span.events[0].name == "exception"
