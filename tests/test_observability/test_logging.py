"""Tests for logging setup and job context binding."""

import logging

import structlog

from topic_tracker.observability.logging import job_context, setup_logging


class TestSetupLogging:
    def test_repeated_setup_keeps_one_handler(self):
        setup_logging()
        setup_logging()

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_noisy_loggers_quieted(self):
        setup_logging()
        assert logging.getLogger("httpx").level == logging.WARNING


class TestJobContext:
    def test_binds_for_duration_of_job(self):
        structlog.contextvars.clear_contextvars()

        with job_context("job-1", "process", "python-releases"):
            bound = structlog.contextvars.get_contextvars()
            assert bound == {"job_id": "job-1", "kind": "process", "topic_slug": "python-releases"}

        assert structlog.contextvars.get_contextvars() == {}

    def test_restores_outer_context(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="req-1")

        with job_context("job-1", "clean", "dormant"):
            assert structlog.contextvars.get_contextvars()["request_id"] == "req-1"

        assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}
        structlog.contextvars.clear_contextvars()
