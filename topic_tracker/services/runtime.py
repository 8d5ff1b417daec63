"""
Wiring of the pipeline services for the worker, CLI and API processes.

Summarizer and notifier are optional: each is built only when its
credentials are configured, and the pipeline skips the step otherwise.
"""

import structlog

from topic_tracker.config.settings import get_settings
from topic_tracker.config.topics import TopicCatalog
from topic_tracker.events.broadcaster import EventPublisher
from topic_tracker.ingestion.factory import AdapterFactory
from topic_tracker.locking.advisory import AdvisoryLockService
from topic_tracker.notifications.base import Notifier
from topic_tracker.notifications.slack import SlackNotifier
from topic_tracker.services.job_processor import TopicJobProcessor
from topic_tracker.services.orchestrator import TopicOrchestrator
from topic_tracker.storage.database import Database
from topic_tracker.storage.repository import SourceRepository, TaskRepository, TopicRepository
from topic_tracker.summarization.base import Summarizer
from topic_tracker.summarization.openai_assistant import OpenAIAssistantSummarizer
from topic_tracker.tasks.ledger import TaskLedger

logger = structlog.get_logger(__name__)


def build_summarizer(catalog: TopicCatalog) -> Summarizer | None:
    if not get_settings().summarizer_configured:
        logger.warning("OpenAI API key not configured, summaries disabled")
        return None
    return OpenAIAssistantSummarizer(config=catalog.global_config.summarizer)


def build_notifier(catalog: TopicCatalog) -> Notifier | None:
    if not get_settings().notifier_configured:
        logger.warning("Slack bot token not configured, notifications disabled")
        return None
    return SlackNotifier(config=catalog.global_config.notifier)


def build_orchestrator(
    database: Database,
    catalog: TopicCatalog,
    publisher: EventPublisher | None = None,
) -> TopicOrchestrator:
    return TopicOrchestrator(
        database,
        catalog,
        AdvisoryLockService(database),
        AdapterFactory(),
        summarizer=build_summarizer(catalog),
        notifier=build_notifier(catalog),
        publisher=publisher,
    )


def build_job_processor(
    database: Database,
    catalog: TopicCatalog,
    publisher: EventPublisher | None = None,
) -> TopicJobProcessor:
    return TopicJobProcessor(
        build_orchestrator(database, catalog, publisher),
        TaskLedger(TaskRepository(database)),
        topics=TopicRepository(database),
        publisher=publisher,
    )


async def sync_catalog(database: Database, catalog: TopicCatalog) -> int:
    """Upsert every configured topic and its sources. Returns the topic count."""
    topics = TopicRepository(database)
    sources = SourceRepository(database)

    for config in catalog.all():
        async with database.transaction() as conn:
            topic = await topics.upsert_from_config(config, conn=conn)
            for source in config.sources:
                await sources.upsert(topic.id, source, conn=conn)

    count = len(catalog.all())
    logger.info("Topic catalog synchronized", topics=count)
    return count
