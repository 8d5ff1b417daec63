"""
Cron scheduler for topic processing.

Each enabled topic with a schedule (its own, else the global default) gets
one asyncio task that sleeps until the next cron firing in the schedule's
timezone and then requests a process job through the trigger service. A
daily maintenance schedule prunes old tasks and finished queue records.

Firing errors are logged; a schedule keeps running after a failed firing.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from croniter import croniter

from topic_tracker.config.topics import TopicCatalog, TopicConfig
from topic_tracker.queues.work_queue import DuplicateJobError, TopicJobQueue
from topic_tracker.services.triggers import TopicTriggerService
from topic_tracker.tasks.ledger import TaskLedger

logger = structlog.get_logger(__name__)

MAINTENANCE_CRON = "0 2 * * *"
MAINTENANCE_NAME = "cleanup-tasks"
TASK_RETENTION_DAYS = 7


@dataclass
class CronSchedule:
    """A named cron expression bound to an async action."""

    name: str
    cron: str
    timezone: str
    action: Callable[[], Awaitable[None]]
    task: asyncio.Task | None = field(default=None, repr=False)
    last_run: datetime | None = None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def next_run(self, after: datetime | None = None) -> datetime:
        base = after or datetime.now(self.tz)
        return croniter(self.cron, base).get_next(datetime)


def planned_schedules(catalog: TopicCatalog) -> list[dict[str, Any]]:
    """
    Schedules the scheduler would register for the current catalog.

    Entries with an invalid cron expression or timezone carry an ``error``
    instead of ``next_run``; topics without any schedule are omitted.
    """
    planned = []
    entries = []
    for topic in catalog.enabled():
        schedule = catalog.schedule_for(topic)
        if schedule is not None:
            entries.append((f"topic-{topic.slug}", schedule.cron, schedule.timezone or catalog.timezone))
    entries.append((MAINTENANCE_NAME, MAINTENANCE_CRON, catalog.timezone))

    for name, cron, tz in entries:
        entry: dict[str, Any] = {"name": name, "cron": cron, "timezone": tz}
        if not croniter.is_valid(cron):
            entry["error"] = "invalid cron expression"
        else:
            try:
                now = datetime.now(ZoneInfo(tz))
            except (ZoneInfoNotFoundError, ValueError):
                entry["error"] = "unknown timezone"
            else:
                entry["next_run"] = croniter(cron, now).get_next(datetime).isoformat()
        planned.append(entry)
    return planned


class TopicScheduler:
    """
    Runs cron schedules for the enabled topics.

    Usage:
        scheduler = TopicScheduler(catalog, triggers, ledger, queue)
        await scheduler.start()  # Runs until stop()
    """

    def __init__(
        self,
        catalog: TopicCatalog,
        triggers: TopicTriggerService,
        ledger: TaskLedger,
        queue: TopicJobQueue,
    ):
        self._catalog = catalog
        self._triggers = triggers
        self._ledger = ledger
        self._queue = queue
        self._schedules: dict[str, CronSchedule] = {}
        self._stop_event = asyncio.Event()
        self._running = False

    def is_running(self) -> bool:
        return self._running and bool(self._schedules)

    async def start(self) -> None:
        """Start every schedule and run until stop() is called."""
        self._running = True
        self._stop_event.clear()
        self._schedule_all()
        logger.info("Scheduler started", schedules=len(self._schedules))

        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled")
        finally:
            await self._stop_all()
            self._running = False
            logger.info("Scheduler stopped")

    async def stop(self) -> None:
        logger.info("Stopping scheduler")
        self._stop_event.set()

    async def refresh_schedules(self) -> None:
        """Reload the topic catalog and rebuild every schedule."""
        logger.info("Refreshing schedules")
        await self._stop_all()
        self._catalog.reload()
        if self._running:
            self._schedule_all()
        logger.info("Schedules refreshed", schedules=len(self._schedules))

    def schedule_info(self) -> list[dict[str, Any]]:
        info = []
        for schedule in self._schedules.values():
            info.append(
                {
                    "name": schedule.name,
                    "cron": schedule.cron,
                    "timezone": schedule.timezone,
                    "running": schedule.running,
                    "last_run": schedule.last_run.isoformat() if schedule.last_run else None,
                    "next_run": schedule.next_run().isoformat(),
                }
            )
        return info

    # -- building schedules ---------------------------------------------

    def _schedule_all(self) -> None:
        for topic in self._catalog.enabled():
            self._schedule_topic(topic)
        self._add(
            CronSchedule(
                name=MAINTENANCE_NAME,
                cron=MAINTENANCE_CRON,
                timezone=self._catalog.timezone,
                action=self._run_maintenance,
            )
        )

    def _schedule_topic(self, topic: TopicConfig) -> None:
        schedule = self._catalog.schedule_for(topic)
        if schedule is None:
            logger.warning("No schedule configured for topic", topic_slug=topic.slug)
            return

        slug = topic.slug

        async def fire() -> None:
            await self._fire_topic(slug)

        self._add(
            CronSchedule(
                name=f"topic-{slug}",
                cron=schedule.cron,
                timezone=schedule.timezone or self._catalog.timezone,
                action=fire,
            )
        )

    def _add(self, schedule: CronSchedule) -> None:
        if not croniter.is_valid(schedule.cron):
            logger.error("Invalid cron expression, schedule skipped", name=schedule.name, cron=schedule.cron)
            return
        try:
            ZoneInfo(schedule.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.error("Unknown timezone, schedule skipped", name=schedule.name, timezone=schedule.timezone)
            return

        schedule.task = asyncio.create_task(self._run_schedule(schedule), name=f"schedule-{schedule.name}")
        self._schedules[schedule.name] = schedule
        logger.info(
            "Schedule registered",
            name=schedule.name,
            cron=schedule.cron,
            timezone=schedule.timezone,
        )

    async def _stop_all(self) -> None:
        tasks = [s.task for s in self._schedules.values() if s.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._schedules.clear()

    # -- running schedules ----------------------------------------------

    async def _run_schedule(self, schedule: CronSchedule) -> None:
        tz = schedule.tz
        itr = croniter(schedule.cron, datetime.now(tz))

        while True:
            fire_at = itr.get_next(datetime)
            now = datetime.now(tz)
            # Skip firings missed while the previous action was running
            while fire_at <= now:
                fire_at = itr.get_next(datetime)

            await asyncio.sleep((fire_at - now).total_seconds())
            schedule.last_run = datetime.now(tz)

            try:
                await schedule.action()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Scheduled action failed", name=schedule.name, error=str(e))

    async def _fire_topic(self, slug: str) -> None:
        logger.info("Executing scheduled processing", topic_slug=slug)
        try:
            task, job_id = await self._triggers.request_process(slug, force=False, requester="scheduler")
        except DuplicateJobError as e:
            logger.info("Scheduled run skipped, job already in flight", topic_slug=slug, existing_job_id=e.existing_job_id)
            return
        except Exception as e:
            logger.error("Failed to queue scheduled processing", topic_slug=slug, error=str(e))
            return
        logger.info("Queued scheduled processing", topic_slug=slug, task_id=task.id, job_id=job_id)

    async def _run_maintenance(self) -> None:
        logger.info("Executing maintenance")
        try:
            await self._ledger.delete_older_than(TASK_RETENTION_DAYS)
        except Exception as e:
            logger.error("Failed to delete old tasks", error=str(e))
        try:
            await self._queue.clean()
        except Exception as e:
            logger.error("Failed to clean queue records", error=str(e))
        logger.info("Completed maintenance")
