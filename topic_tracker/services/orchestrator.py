"""
Topic orchestrator - runs the pipeline for one topic under its lock.

process:  fetch every enabled source from its watermark, deduplicate,
          persist items and watermarks, summarize, notify
revert:   drop the runs of a recent period and the items only they held,
          then reset watermarks so the next run refetches the lookback window
clean:    delete everything stored for a topic

Each operation holds the named advisory lock ``<op>-topic-<slug>`` for its
whole duration, so two workers never interleave on the same topic.
"""

import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from topic_tracker.config.settings import get_settings
from topic_tracker.config.topics import TopicCatalog, TopicConfig
from topic_tracker.events.broadcaster import EventPublisher, NullPublisher
from topic_tracker.ingestion.base_adapter import FetchedItem, to_iso
from topic_tracker.ingestion.deduplication import DeduplicationGate, fingerprint, similarity_hash
from topic_tracker.ingestion.factory import AdapterFactory
from topic_tracker.locking.advisory import AdvisoryLockService
from topic_tracker.notifications.base import Notifier
from topic_tracker.observability.metrics import get_metrics
from topic_tracker.observability.tracing import get_tracer, traced
from topic_tracker.services.errors import (
    ConfirmationRequiredError,
    InvalidPeriodError,
    TopicDisabledError,
    TopicNotFoundError,
)
from topic_tracker.storage.database import Database
from topic_tracker.storage.repository import (
    ItemRepository,
    RunRepository,
    SourceRepository,
    TopicRepository,
    WatermarkRepository,
)
from topic_tracker.storage.schemas import Item, RunStatus, Source, Topic
from topic_tracker.summarization.base import Summarizer

logger = structlog.get_logger(__name__)

PERIOD_PATTERN = re.compile(r"^(\d+)([dhm])$")
_PERIOD_UNITS = {"d": "days", "h": "hours", "m": "minutes"}

NO_NEW_ITEMS_MESSAGE = "No new items to process"
NO_RUNS_MESSAGE = "No runs found in the specified period"


def parse_period(period: str) -> timedelta:
    """``"2d"``, ``"6h"`` or ``"30m"`` as a timedelta."""
    match = PERIOD_PATTERN.match(period or "")
    if not match:
        raise InvalidPeriodError(period)
    value, unit = int(match.group(1)), match.group(2)
    return timedelta(**{_PERIOD_UNITS[unit]: value})


def format_time_range(items: list[Item]) -> str:
    dates = sorted(i.published_at for i in items if i.published_at is not None)
    if not items:
        return "No items"
    if not dates:
        return "No dates available"

    oldest, newest = dates[0], dates[-1]
    if oldest.date() == newest.date():
        return oldest.strftime("%a %b %d %Y")
    return f"{oldest.strftime('%a %b %d %Y')} - {newest.strftime('%a %b %d %Y')}"


@dataclass
class ProcessResult:
    run_id: str | None
    processed: int
    summary: str | None = None
    source_errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RevertResult:
    deleted: int
    items_deleted: int = 0
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CleanResult:
    deleted: dict[str, Any]
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _SourceBatch:
    """Items fetched from one source plus the watermark they advance it to."""

    source: Source
    items: list[Item]
    next_watermark: str | None


class TopicOrchestrator:
    """
    Runs process/revert/clean for a topic.

    Usage:
        orchestrator = TopicOrchestrator(db, catalog, locks, AdapterFactory())
        result = await orchestrator.process_topic("python-releases")
    """

    def __init__(
        self,
        database: Database,
        catalog: TopicCatalog,
        locks: AdvisoryLockService,
        adapters: AdapterFactory,
        dedup: DeduplicationGate | None = None,
        summarizer: Summarizer | None = None,
        notifier: Notifier | None = None,
        publisher: EventPublisher | None = None,
    ):
        self._db = database
        self._catalog = catalog
        self._locks = locks
        self._adapters = adapters
        self._summarizer = summarizer
        self._notifier = notifier
        self._publisher = publisher or NullPublisher()

        self._topics = TopicRepository(database)
        self._sources = SourceRepository(database)
        self._watermarks = WatermarkRepository(database)
        self._items = ItemRepository(database)
        self._runs = RunRepository(database)
        self._dedup = dedup or DeduplicationGate(
            self._items,
            lookback_days=catalog.global_config.deduplication.lookback_days,
        )

        self._metrics = get_metrics()
        self._tracer = get_tracer("topic_tracker.orchestrator")

    def resolve_topic(self, slug: str, require_enabled: bool = False) -> TopicConfig:
        """Configured topic for ``slug``; raises a configuration error otherwise."""
        config = self._catalog.get(slug)
        if config is None:
            raise TopicNotFoundError(slug)
        if require_enabled and not config.enabled:
            raise TopicDisabledError(slug)
        return config

    # -- process ----------------------------------------------------------

    async def process_topic(self, slug: str, force: bool = False) -> ProcessResult:
        config = self.resolve_topic(slug, require_enabled=True)

        with traced(self._tracer, "process_topic", {"topic.slug": slug, "force": force}):
            async with self._locks.hold(f"process-topic-{slug}"):
                return await self._process_locked(config, force)

    async def _process_locked(self, config: TopicConfig, force: bool) -> ProcessResult:
        slug = config.slug
        log = logger.bind(topic_slug=slug, force=force)
        log.info("Starting topic processing")

        topic = await self._topics.upsert_from_config(config)
        run = await self._runs.create(topic.id)
        run.topic_slug = slug
        await self._publisher.broadcast_new_run(run)

        start = time.monotonic()
        try:
            await self._runs.mark_running(run.id)
            await self._publisher.broadcast_run_update(run.id, RunStatus.RUNNING.value, slug)

            result = await self._run_pipeline(topic, config, run.id, force)
        except Exception as e:
            log.error("Topic processing failed", run_id=run.id, error=str(e))
            try:
                await self._runs.fail(run.id, str(e))
            except Exception as db_error:
                log.error("Failed to mark run failed", run_id=run.id, error=str(db_error))
            self._metrics.record_run(slug, RunStatus.FAILED.value, time.monotonic() - start)
            await self._publisher.broadcast_run_update(
                run.id, RunStatus.FAILED.value, slug, error=str(e)
            )
            raise

        self._metrics.record_run(slug, RunStatus.COMPLETED.value, time.monotonic() - start)
        await self._publisher.broadcast_run_update(
            run.id,
            RunStatus.COMPLETED.value,
            slug,
            processed=result.processed,
            summary_present=result.summary is not None,
        )
        log.info("Completed topic processing", run_id=run.id, processed=result.processed)
        return result

    async def _run_pipeline(
        self, topic: Topic, config: TopicConfig, run_id: str, force: bool
    ) -> ProcessResult:
        slug = config.slug
        enabled_sources = config.enabled_sources()
        lookback_days = self._catalog.lookback_days_for(config)
        seed = to_iso(datetime.now(timezone.utc) - timedelta(days=lookback_days))

        batches: list[_SourceBatch] = []
        source_errors: list[dict[str, str]] = []

        for source_config in enabled_sources:
            source = await self._sources.upsert(topic.id, source_config)
            try:
                batch = await self._fetch_source(topic, source, seed, force)
            except Exception as e:
                logger.error(
                    "Failed to fetch source",
                    topic_slug=slug,
                    source=source.name,
                    kind=source.kind,
                    error=str(e),
                )
                self._metrics.record_source_error(slug, source.kind)
                source_errors.append({"source": source.name, "kind": source.kind, "error": str(e)})
                continue

            self._metrics.record_fetch(slug, source.kind, len(batch.items))
            batches.append(batch)

        fetched = [item for batch in batches for item in batch.items]
        logger.info("Fetched items", topic_slug=slug, count=len(fetched))

        if force:
            unique = fetched
        else:
            unique = await self._dedup.filter_new(fetched, topic.id)
            self._metrics.record_dedup(slug, len(fetched) - len(unique))

        item_ids = await self._persist(batches, unique)
        self._metrics.record_persisted(slug, len(item_ids))

        if not unique:
            metadata: dict[str, Any] = {"message": NO_NEW_ITEMS_MESSAGE}
            if source_errors:
                metadata["source_errors"] = source_errors
            await self._runs.complete(run_id, metadata)
            return ProcessResult(run_id=run_id, processed=0, summary=None, source_errors=source_errors)

        await self._runs.link_items(run_id, item_ids)

        summary, prompt = await self._summarize(config, unique)
        if summary:
            await self._notify(config, summary, unique)

        await self._runs.complete(
            run_id,
            {
                "items_processed": len(unique),
                "sources_processed": len(enabled_sources),
                "summary_present": bool(summary),
                "summary": summary,
                "prompt": prompt,
                "source_errors": source_errors,
            },
        )
        return ProcessResult(
            run_id=run_id,
            processed=len(unique),
            summary=summary,
            source_errors=source_errors,
        )

    async def _fetch_source(
        self, topic: Topic, source: Source, seed: str, force: bool
    ) -> _SourceBatch:
        stored = None if force else await self._watermarks.get(source.id)
        watermark = stored.value if stored else seed

        adapter = self._adapters.get(source.kind)
        result = await adapter.fetch_items(source, watermark)

        items = [self._to_item(topic.id, source, fetched) for fetched in result.items]
        return _SourceBatch(source=source, items=items, next_watermark=result.next_watermark)

    @staticmethod
    def _to_item(topic_id: str, source: Source, fetched: FetchedItem) -> Item:
        return Item(
            topic_id=topic_id,
            source_id=source.id,
            title=fetched.title,
            content=fetched.content,
            url=fetched.url,
            published_at=fetched.published_at,
            content_hash=fingerprint(fetched),
            similarity_hash=similarity_hash(fetched),
            metadata={**fetched.metadata, "source_name": source.name},
        )

    async def _persist(self, batches: list[_SourceBatch], unique: list[Item]) -> list[str]:
        """
        Store accepted items and advance watermarks, one transaction per source.

        Watermarks advance even when every item of the source was a duplicate.
        """
        accepted = {id(item) for item in unique}
        item_ids: list[str] = []

        for batch in batches:
            keep = [item for item in batch.items if id(item) in accepted]
            if not keep and not batch.next_watermark:
                continue

            async with self._db.transaction() as conn:
                for item in keep:
                    item.id = await self._items.upsert(item, conn=conn)
                    item_ids.append(item.id)
                if batch.next_watermark:
                    await self._watermarks.upsert(batch.source.id, batch.next_watermark, conn=conn)

        return list(dict.fromkeys(item_ids))

    async def _summarize(
        self, config: TopicConfig, items: list[Item]
    ) -> tuple[str | None, str | None]:
        assistant_id = config.assistant_id or get_settings().openai_assistant_id
        if not assistant_id or self._summarizer is None:
            return None, None

        limits = self._catalog.global_config.summarizer
        try:
            result = await self._summarizer.summarize(
                items[: limits.max_items_per_run], assistant_id
            )
        except Exception as e:
            logger.error("Summarization failed", topic_slug=config.slug, error=str(e))
            return None, None
        return result.text or None, result.prompt or None

    async def _notify(self, config: TopicConfig, summary: str, items: list[Item]) -> None:
        targets = config.notifier_targets
        if not targets or self._notifier is None:
            return

        metadata = {
            "item_count": len(items),
            "time_range": format_time_range(items),
            "sources": len(config.sources),
        }
        for channel in targets:
            try:
                result = await self._notifier.post(config.name, summary, [channel], metadata)
            except Exception as e:
                logger.error("Notification failed", topic_slug=config.slug, channel=channel, error=str(e))
                continue
            if not result.success:
                logger.warning(
                    "Notification failed", topic_slug=config.slug, channel=channel, errors=result.errors
                )

    # -- revert -----------------------------------------------------------

    async def revert_topic(self, slug: str, period: str) -> RevertResult:
        window = parse_period(period)
        self.resolve_topic(slug)

        with traced(self._tracer, "revert_topic", {"topic.slug": slug, "period": period}):
            async with self._locks.hold(f"revert-topic-{slug}"):
                return await self._revert_locked(slug, period, window)

    async def _revert_locked(self, slug: str, period: str, window: timedelta) -> RevertResult:
        cutoff = datetime.now(timezone.utc) - window
        logger.info("Reverting topic", topic_slug=slug, period=period, since=cutoff.isoformat())

        topic = await self._topics.get_by_slug(slug)
        if topic is None:
            return RevertResult(deleted=0, message=NO_RUNS_MESSAGE)

        run_ids = await self._runs.ids_since(topic.id, cutoff)
        if not run_ids:
            return RevertResult(deleted=0, message=NO_RUNS_MESSAGE)

        async with self._db.transaction() as conn:
            runs_deleted = await self._runs.delete_many(run_ids, conn=conn)
            items_deleted = await self._items.delete_unreferenced_since(topic.id, cutoff, conn=conn)
            watermarks_reset = await self._watermarks.delete_for_topic(topic.id, conn=conn)

        logger.info(
            "Reverted topic",
            topic_slug=slug,
            runs_deleted=runs_deleted,
            items_deleted=items_deleted,
            watermarks_reset=watermarks_reset,
        )
        return RevertResult(
            deleted=runs_deleted,
            items_deleted=items_deleted,
            message=f"Reverted {runs_deleted} runs and {items_deleted} items since {cutoff.isoformat()}",
        )

    # -- clean ------------------------------------------------------------

    async def clean_topic(self, slug: str, confirm: bool = False) -> CleanResult:
        if not confirm:
            raise ConfirmationRequiredError(slug)
        self.resolve_topic(slug)

        with traced(self._tracer, "clean_topic", {"topic.slug": slug}):
            async with self._locks.hold(f"clean-topic-{slug}"):
                return await self._clean_locked(slug)

    async def _clean_locked(self, slug: str) -> CleanResult:
        deleted: dict[str, Any] = {
            "runs": 0,
            "items": 0,
            "sources": 0,
            "watermarks": 0,
            "topic": False,
        }

        topic = await self._topics.get_by_slug(slug)
        if topic is None:
            return CleanResult(deleted=deleted, message=f"Topic {slug} has no stored data")

        async with self._db.transaction() as conn:
            deleted["runs"] = await self._runs.delete_for_topic(topic.id, conn=conn)
            deleted["items"] = await self._items.delete_for_topic(topic.id, conn=conn)
            deleted["watermarks"] = await self._watermarks.delete_for_topic(topic.id, conn=conn)
            deleted["sources"] = await self._sources.delete_for_topic(topic.id, conn=conn)
            deleted["topic"] = await self._topics.delete(topic.id, conn=conn) > 0

        logger.info("Cleaned topic", topic_slug=slug, **deleted)
        return CleanResult(
            deleted=deleted,
            message=f"Topic {slug} has been completely cleaned from the database",
        )
