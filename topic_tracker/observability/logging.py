"""
Structured logging configuration using structlog.

Both structlog loggers (services, workers) and stdlib loggers (adapters,
repositories, notifiers) go through one ``ProcessorFormatter`` on stdout:
JSON in production, a console renderer in development. Entries carry the
bound context (request id, job id, topic slug) and the active trace ids.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from structlog.types import Processor

from topic_tracker.config.settings import get_settings
from topic_tracker.observability.tracing import add_trace_context

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "openai", "asyncpg")


def setup_logging() -> None:
    """
    Configure structured logging for the application.

    Safe to call more than once; the root handler is replaced each time.

    Usage:
        setup_logging()
        logger = structlog.get_logger(__name__)
        logger.info("Run completed", topic_slug="python-releases", items=12)
    """
    settings = get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        add_trace_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_production:
        renderers: list[Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.log_level))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def job_context(job_id: str, kind: str, topic_slug: str) -> Iterator[None]:
    """
    Attach job identifiers to every entry logged while a job runs.

    Each job runs in its own task, so the binding never leaks into
    concurrently running jobs.
    """
    with structlog.contextvars.bound_contextvars(job_id=job_id, kind=kind, topic_slug=topic_slug):
        yield
