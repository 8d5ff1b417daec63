"""FastAPI application factory and lifespan."""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from topic_tracker.api.dependencies import (
    cleanup_dependencies,
    get_catalog,
    get_database,
    get_event_broadcaster,
    get_job_queue,
    get_trigger_service,
    set_scheduler,
    stop_event_broadcaster,
)
from topic_tracker.api.routes import health, runs, tasks, topics, ws_events
from topic_tracker.api.routes.ws_events import set_broadcaster
from topic_tracker.config.settings import get_settings
from topic_tracker.events.broadcaster import EventBroadcaster
from topic_tracker.observability.tracing import get_tracer, traced
from topic_tracker.queues.work_queue import TopicJobQueue
from topic_tracker.queues.worker import TopicWorker
from topic_tracker.scheduling.scheduler import TopicScheduler
from topic_tracker.services.runtime import build_job_processor
from topic_tracker.storage.repository import TaskRepository
from topic_tracker.tasks.ledger import TaskLedger

logger = structlog.get_logger(__name__)
_tracer = get_tracer("topic_tracker.api")


async def _request_context(request: Request, call_next):
    """Bind a request id to the logs, wrap the request in a span and log it."""
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or uuid.uuid4().hex
    )
    start = time.perf_counter()
    span_name = f"{request.method} {request.url.path}"
    attributes = {"http.method": request.method, "http.route": request.url.path, "http.request_id": request_id}

    with structlog.contextvars.bound_contextvars(request_id=request_id), \
            traced(_tracer, span_name, attributes) as span:
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        span.set_attribute("http.status_code", response.status_code)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
    return response


async def _start_background_services(broadcaster: EventBroadcaster) -> list[tuple[object, asyncio.Task]]:
    """Run the worker pool and scheduler inside the API process."""
    database = await get_database()
    catalog = get_catalog()

    worker = TopicWorker(
        TopicJobQueue(),
        build_job_processor(database, catalog, publisher=broadcaster),
    )
    scheduler = TopicScheduler(
        catalog,
        await get_trigger_service(),
        TaskLedger(TaskRepository(database)),
        await get_job_queue(),
    )
    set_scheduler(scheduler)

    return [
        (worker, asyncio.create_task(worker.start(), name="topic-worker")),
        (scheduler, asyncio.create_task(scheduler.start(), name="topic-scheduler")),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Topic API starting up")

    settings = get_settings()
    if settings.tracing_enabled:
        from topic_tracker.observability.tracing import setup_tracing

        setup_tracing(
            service_name=settings.otel_service_name,
            otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        )

    broadcaster = await get_event_broadcaster()
    set_broadcaster(broadcaster)
    logger.info("WebSocket event broadcaster started")

    background: list[tuple[object, asyncio.Task]] = []
    if settings.run_workers_in_api:
        try:
            background = await _start_background_services(broadcaster)
            logger.info("Worker pool and scheduler started in-process")
        except Exception as e:
            logger.error("Failed to start in-process worker and scheduler", error=str(e))

    yield

    logger.info("Topic API shutting down")
    for service, task in background:
        await service.stop()
    await asyncio.gather(*(task for _, task in background), return_exceptions=True)

    set_broadcaster(None)
    await stop_event_broadcaster()
    await cleanup_dependencies()


API_VERSION = "0.1.0"

OPENAPI_TAGS = [
    {"name": "health", "description": "Service health checks"},
    {"name": "topics", "description": "Topic statistics and process/revert/clean triggers"},
    {"name": "tasks", "description": "Task ledger"},
    {"name": "runs", "description": "Run history"},
    {"name": "websocket", "description": "Real-time pipeline events"},
]

API_DESCRIPTION = """
Trigger topic processing and observe its progress.

- **process**: fetch new items from a topic's sources, summarize and notify
- **revert**: delete runs from a recent window and reset watermarks
- **clean**: delete all stored data for a topic

Operations are queued and answered with `202 Accepted`; follow them through
`/tasks/{id}` or the `/ws/events` WebSocket.
"""


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_type": "internal"},
    )


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Topic Tracker API",
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
        openapi_tags=OPENAPI_TAGS,
    )

    # CORS_ORIGINS is comma-separated
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.middleware("http")(_request_context)

    if settings.rate_limit_enabled:
        from slowapi import _rate_limit_exceeded_handler
        from slowapi.errors import RateLimitExceeded

        from topic_tracker.api.rate_limit import limiter

        app.state.limiter = limiter
        app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_exception_handler(Exception, _unhandled_error)

    for module, tag in (
        (health, "health"),
        (topics, "topics"),
        (tasks, "tasks"),
        (runs, "runs"),
        (ws_events, "websocket"),
    ):
        app.include_router(module.router, tags=[tag])

    @app.get("/", include_in_schema=False)
    async def root():
        return {"service": "Topic Tracker API", "version": API_VERSION, "docs": "/docs"}

    return app
