"""
Command-line interface for topic-tracker.

Provides commands to run the worker pool, scheduler and API, to trigger
topic operations, and to inspect tasks, the queue and service health.

Usage:
    topic-tracker init-db                   # Create tables, sync topics
    topic-tracker worker                    # Run the job worker pool
    topic-tracker scheduler                 # Run cron schedules
    topic-tracker serve                     # Run the HTTP API
    topic-tracker process python-releases   # Queue a processing run
    topic-tracker health                    # Check service health
"""

import asyncio
import json
import signal
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import click

from topic_tracker.config.settings import get_settings
from topic_tracker.observability.logging import setup_logging
from topic_tracker.observability.metrics import get_metrics


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """Topic Tracker - scheduled topic monitoring, summaries and notifications."""
    if debug:
        import os
        os.environ["LOG_LEVEL"] = "DEBUG"
        get_settings.cache_clear()

    setup_logging()

    settings = get_settings()
    if settings.tracing_enabled:
        from topic_tracker.observability.tracing import setup_tracing

        setup_tracing(
            service_name=settings.otel_service_name,
            otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        )


@asynccontextmanager
async def _services() -> AsyncIterator[dict[str, Any]]:
    """Connected database and queue plus the topic catalog and task ledger."""
    from topic_tracker.config.topics import TopicCatalog
    from topic_tracker.queues.work_queue import TopicJobQueue
    from topic_tracker.services.triggers import TopicTriggerService
    from topic_tracker.storage.database import Database
    from topic_tracker.storage.repository import TaskRepository, TopicRepository
    from topic_tracker.tasks.ledger import TaskLedger

    db = Database()
    await db.connect()
    ledger = TaskLedger(TaskRepository(db))
    queue = TopicJobQueue(on_abandoned=ledger.mark_abandoned)
    try:
        await queue.connect()
        catalog = TopicCatalog()
        catalog.load()
        yield {
            "db": db,
            "queue": queue,
            "catalog": catalog,
            "ledger": ledger,
            "triggers": TopicTriggerService(catalog, ledger, queue, topics=TopicRepository(db)),
        }
    finally:
        await queue.close()
        await db.close()


def _fail(message: str) -> None:
    click.echo(click.style(message, fg="red"), err=True)
    sys.exit(1)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _submit(operation: str, slug: str, submit) -> None:
    """Run a trigger and print the task and job ids, or the error."""
    from topic_tracker.config.topics import TopicConfigError
    from topic_tracker.queues.work_queue import DuplicateJobError

    async def run():
        async with _services() as services:
            return await submit(services["triggers"])

    try:
        task, job_id = asyncio.run(run())
    except (TopicConfigError, DuplicateJobError) as e:
        _fail(str(e))
        return

    click.echo(f"Queued {operation} for {slug}")
    click.echo(f"  task: {task.id}")
    click.echo(f"  job:  {job_id}")


@main.command("init-db")
def init_db() -> None:
    """Create the database schema and sync configured topics."""
    from topic_tracker.config.topics import TopicCatalog
    from topic_tracker.services.runtime import sync_catalog
    from topic_tracker.storage.database import Database
    from topic_tracker.storage.repository import create_tables

    async def run():
        db = Database()
        await db.connect()

        try:
            await create_tables(db)
            click.echo("Database initialized successfully")

            catalog = TopicCatalog()
            catalog.load()
            count = await sync_catalog(db, catalog)
            click.echo(f"Synchronized {count} topics")
        finally:
            await db.close()

    asyncio.run(run())


@main.command()
@click.option("--concurrency", default=None, type=int, help="Jobs processed at the same time")
@click.option("--metrics/--no-metrics", default=True, help="Enable metrics server")
@click.option("--metrics-port", default=None, type=int, help="Metrics server port")
def worker(concurrency: int | None, metrics: bool, metrics_port: int | None) -> None:
    """Run the job worker pool."""
    from topic_tracker.config.topics import TopicCatalog
    from topic_tracker.queues.work_queue import TopicJobQueue
    from topic_tracker.queues.worker import TopicWorker
    from topic_tracker.services.runtime import build_job_processor
    from topic_tracker.storage.database import Database

    async def run():
        db = Database()
        await db.connect()

        catalog = TopicCatalog()
        catalog.load()

        pool = TopicWorker(
            TopicJobQueue(),
            build_job_processor(db, catalog),
            concurrency=concurrency,
        )

        if metrics:
            get_metrics().start_server(port=metrics_port)

        # Handle shutdown signals
        loop = asyncio.get_event_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(pool.stop()))

        try:
            await pool.start()
        finally:
            await db.close()

    asyncio.run(run())


@main.command()
def scheduler() -> None:
    """Run cron schedules for enabled topics."""
    from topic_tracker.scheduling.scheduler import TopicScheduler

    async def run():
        async with _services() as services:
            service = TopicScheduler(
                services["catalog"],
                services["triggers"],
                services["ledger"],
                services["queue"],
            )

            loop = asyncio.get_event_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda: asyncio.create_task(service.stop()))
            loop.add_signal_handler(
                signal.SIGHUP, lambda: asyncio.create_task(service.refresh_schedules())
            )

            await service.start()

    asyncio.run(run())


@main.command()
@click.option("--host", default=None, help="API server host")
@click.option("--port", default=None, type=int, help="API server port")
@click.option("--reload", is_flag=True, help="Enable auto-reload (dev only)")
@click.option("--metrics-port", default=None, type=int, help="Metrics server port")
def serve(host: str | None, port: int | None, reload: bool, metrics_port: int | None) -> None:
    """Start the HTTP API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    metrics_port = metrics_port or settings.metrics_port

    get_metrics().start_server(port=metrics_port)

    click.echo(f"Starting API server on {host}:{port}")
    click.echo(f"Metrics available on http://localhost:{metrics_port}/metrics")
    click.echo(f"API docs available on http://localhost:{port}/docs")

    uvicorn.run(
        "topic_tracker.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


@main.command()
@click.argument("slug")
@click.option("--force", is_flag=True, help="Ignore watermarks and deduplication")
@click.option("--inline", is_flag=True, help="Run in this process instead of queueing")
def process(slug: str, force: bool, inline: bool) -> None:
    """Queue a processing run for a topic.

    Example:
        topic-tracker process python-releases
        topic-tracker process python-releases --force --inline
    """
    if not inline:
        _submit(
            "process",
            slug,
            lambda triggers: triggers.request_process(slug, force=force, requester="cli"),
        )
        return

    from topic_tracker.config.topics import TopicCatalog, TopicConfigError
    from topic_tracker.services.runtime import build_orchestrator
    from topic_tracker.storage.database import Database

    async def run():
        db = Database()
        await db.connect()
        try:
            catalog = TopicCatalog()
            catalog.load()
            orchestrator = build_orchestrator(db, catalog)
            return await orchestrator.process_topic(slug, force=force)
        finally:
            await db.close()

    try:
        result = asyncio.run(run())
    except TopicConfigError as e:
        _fail(str(e))
        return

    click.echo(f"\nRun {result.run_id}: {result.processed} new items")
    for error in result.source_errors:
        click.echo(click.style(f"  source {error['source']} failed: {error['error']}", fg="yellow"))
    if result.summary:
        click.echo("\n" + result.summary)


@main.command()
@click.argument("slug")
@click.argument("period")
def revert(slug: str, period: str) -> None:
    """Delete the runs of a topic from the last PERIOD (e.g. 1d, 12h, 30m)."""
    from topic_tracker.services.errors import InvalidPeriodError
    from topic_tracker.services.orchestrator import parse_period

    try:
        parse_period(period)
    except InvalidPeriodError as e:
        _fail(str(e))
        return

    _submit(
        "revert",
        slug,
        lambda triggers: triggers.request_revert(slug, period, requester="cli"),
    )


@main.command()
@click.argument("slug")
@click.option("--yes", "confirm", is_flag=True, help="Confirm deletion of all topic data")
def clean(slug: str, confirm: bool) -> None:
    """Delete all stored data for a topic."""
    if not confirm:
        _fail(f"Refusing to clean {slug} without --yes")
        return

    _submit(
        "clean",
        slug,
        lambda triggers: triggers.request_clean(slug, confirm=True, requester="cli"),
    )


@main.command()
@click.option("--topic", default=None, help="Filter by topic slug")
@click.option(
    "--status",
    "task_status",
    default=None,
    type=click.Choice(["pending", "running", "completed", "failed"]),
    help="Filter by status",
)
@click.option("--limit", default=20, help="Maximum tasks to show")
def tasks(topic: str | None, task_status: str | None, limit: int) -> None:
    """List recent tasks."""
    from topic_tracker.storage.database import Database
    from topic_tracker.storage.repository import TaskRepository
    from topic_tracker.tasks.ledger import TaskLedger

    async def run():
        db = Database()
        await db.connect()
        try:
            return await TaskLedger(TaskRepository(db)).list(
                topic_slug=topic, status=task_status, limit=limit
            )
        finally:
            await db.close()

    rows = asyncio.run(run())
    if not rows:
        click.echo("No tasks found.")
        return

    for task in rows:
        created = task.created_at.strftime("%Y-%m-%d %H:%M:%S") if task.created_at else "-"
        line = f"  {task.id}  {task.kind.value:8s} {task.status.value:10s} {task.topic_slug or '-':20s} {created}"
        if task.error:
            line += f"  ({task.error})"
        click.echo(line)


@main.command("task-stats")
def task_stats() -> None:
    """Show task counts by status and kind."""
    from topic_tracker.storage.database import Database
    from topic_tracker.storage.repository import TaskRepository
    from topic_tracker.tasks.ledger import TaskLedger

    async def run():
        db = Database()
        await db.connect()
        try:
            return await TaskLedger(TaskRepository(db)).stats()
        finally:
            await db.close()

    _echo_json(asyncio.run(run()))


@main.command("queue-stats")
def queue_stats() -> None:
    """Show job counts by state."""
    from topic_tracker.queues.work_queue import TopicJobQueue

    async def run():
        async with TopicJobQueue() as queue:
            counts = await queue.stats()
            counts["dead_lettered"] = await queue.get_dlq_length()
            counts["paused"] = int(await queue.is_paused())
            return counts

    _echo_json(asyncio.run(run()))


@main.command()
def schedules() -> None:
    """Show the schedules the scheduler would run, with their next firing."""
    from topic_tracker.config.topics import TopicCatalog
    from topic_tracker.scheduling.scheduler import planned_schedules

    catalog = TopicCatalog()
    catalog.load()

    for entry in planned_schedules(catalog):
        if "error" in entry:
            click.echo(click.style(
                f"  {entry['name']:30s} {entry['cron']:15s} {entry['timezone']:18s} {entry['error']}",
                fg="red",
            ))
        else:
            click.echo(f"  {entry['name']:30s} {entry['cron']:15s} {entry['timezone']:18s} next: {entry['next_run']}")


@main.command()
def health() -> None:
    """Check health of all dependencies."""
    import structlog
    logger = structlog.get_logger()

    async def check():
        results: dict[str, bool] = {}
        held_locks: list[dict] = []
        busy_topics: list[str] = []

        # Check Redis and the job queue
        try:
            from topic_tracker.queues.work_queue import TopicJobQueue
            queue = TopicJobQueue()
            await queue.connect()
            results["redis"] = await queue.health_check()
            results["queue"] = await queue.is_healthy()
            await queue.close()
        except Exception as e:
            results["redis"] = False
            results["queue"] = False
            logger.error("Redis health check failed", error=str(e))

        # Check PostgreSQL and held locks
        try:
            from topic_tracker.locking.advisory import AdvisoryLockService
            from topic_tracker.storage.database import Database
            db = Database()
            await db.connect()
            results["postgres"] = await db.health_check()
            locks = AdvisoryLockService(db)
            held_locks = await locks.active_locks()
            if held_locks:
                from topic_tracker.config.topics import TopicCatalog
                for topic in TopicCatalog().enabled():
                    if await locks.is_locked(f"process-topic-{topic.slug}"):
                        busy_topics.append(topic.slug)
            await db.close()
        except Exception as e:
            results["postgres"] = False
            logger.error("Postgres health check failed", error=str(e))

        settings = get_settings()
        results["summarizer_configured"] = settings.summarizer_configured
        results["notifier_configured"] = settings.notifier_configured

        click.echo("\nHealth Check Results:")
        click.echo("-" * 40)

        all_healthy = True
        for name, status in results.items():
            icon = "✓" if status else "✗"
            color = "green" if status else "red"
            click.echo(click.style(f"  {icon} {name}: {status}", fg=color))
            if name in ("redis", "postgres", "queue") and not status:
                all_healthy = False

        if held_locks:
            click.echo(f"\n  Locks held: {len(held_locks)}")
            for lock in held_locks:
                click.echo(f"    key={lock['key']} pid={lock['pid']}")
            if busy_topics:
                click.echo(f"  Processing now: {', '.join(busy_topics)}")

        click.echo("-" * 40)

        if all_healthy:
            click.echo(click.style("All core services healthy!", fg="green"))
            sys.exit(0)
        else:
            click.echo(click.style("Some services unhealthy!", fg="red"))
            sys.exit(1)

    asyncio.run(check())


if __name__ == "__main__":
    main()
