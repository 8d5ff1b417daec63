"""Topic endpoints: statistics and the process/revert/clean triggers."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
import structlog

from topic_tracker.api.dependencies import get_catalog, get_topic_repository, get_trigger_service
from topic_tracker.api.models import (
    CleanRequest,
    ErrorResponse,
    ProcessRequest,
    RevertRequest,
    TopicDetail,
    TopicStats,
    TopicsResponse,
    TriggerResponse,
)
from topic_tracker.api.rate_limit import limiter, trigger_limit
from topic_tracker.config.topics import TopicCatalog, TopicConfigError
from topic_tracker.queues.work_queue import DuplicateJobError
from topic_tracker.scheduling.scheduler import planned_schedules
from topic_tracker.services.errors import TopicNotFoundError
from topic_tracker.services.triggers import TopicTriggerService
from topic_tracker.storage.repository import TopicRepository
from topic_tracker.storage.schemas import Task

logger = structlog.get_logger(__name__)
router = APIRouter()

_TRIGGER_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Disabled topic, invalid period or missing confirmation"},
    404: {"model": ErrorResponse, "description": "Unknown topic"},
    409: {"model": ErrorResponse, "description": "A job for this topic is already pending"},
    500: {"model": ErrorResponse, "description": "Server error"},
}


async def _submit(operation: str, slug: str, submit) -> TriggerResponse:
    try:
        task, job_id = await submit()
    except TopicNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except TopicConfigError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except DuplicateJobError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to submit {operation} for {slug}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to submit {operation}: {str(e)}",
        )

    logger.info("Topic operation submitted", operation=operation, topic_slug=slug, task_id=task.id, job_id=job_id)
    return _trigger_response(task, job_id)


def _trigger_response(task: Task, job_id: str) -> TriggerResponse:
    return TriggerResponse(task_id=task.id, job_id=job_id, status=task.status.value)


@router.get(
    "/topics",
    response_model=TopicsResponse,
    responses={500: {"model": ErrorResponse}},
    summary="List topics with statistics",
)
async def list_topics(
    topics: TopicRepository = Depends(get_topic_repository),
) -> TopicsResponse:
    try:
        stats = await topics.get_stats()
    except Exception as e:
        logger.error(f"Failed to list topics: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list topics")

    return TopicsResponse(topics=[TopicStats(**s) for s in stats], total=len(stats))


@router.get(
    "/topics/{slug}",
    response_model=TopicDetail,
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Get one topic with its configuration",
)
async def get_topic(
    slug: str,
    catalog: TopicCatalog = Depends(get_catalog),
    topics: TopicRepository = Depends(get_topic_repository),
) -> TopicDetail:
    config = catalog.get(slug)
    if config is None:
        raise HTTPException(status_code=404, detail=f"Topic not found: {slug}")

    try:
        stats = await topics.get_stats(slug)
    except Exception as e:
        logger.error(f"Failed to load stats for {slug}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to load topic")

    # A topic that never ran has no row yet
    row = stats[0] if stats else {"slug": slug, "name": config.name, "enabled": config.enabled}
    next_run = None
    if config.enabled:
        for entry in planned_schedules(catalog):
            if entry["name"] == f"topic-{slug}":
                next_run = entry.get("next_run")

    return TopicDetail(**row, next_run=next_run, config=config.model_dump(mode="json"))


@router.post(
    "/topics/{slug}/process",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_TRIGGER_RESPONSES,
    summary="Queue a processing run",
    description=(
        "Fetch new items from every enabled source of the topic, summarize "
        "and notify. Returns immediately with the task and job ids."
    ),
)
@limiter.limit(trigger_limit)
async def process_topic(
    request: Request,
    slug: str,
    body: ProcessRequest | None = None,
    triggers: TopicTriggerService = Depends(get_trigger_service),
) -> TriggerResponse:
    force = body.force if body else False
    return await _submit(
        "process", slug, lambda: triggers.request_process(slug, force=force, requester="api")
    )


@router.post(
    "/topics/{slug}/revert",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_TRIGGER_RESPONSES,
    summary="Queue a revert of recent runs",
)
@limiter.limit(trigger_limit)
async def revert_topic(
    request: Request,
    slug: str,
    body: RevertRequest,
    triggers: TopicTriggerService = Depends(get_trigger_service),
) -> TriggerResponse:
    return await _submit(
        "revert", slug, lambda: triggers.request_revert(slug, body.period, requester="api")
    )


@router.post(
    "/topics/{slug}/clean",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_TRIGGER_RESPONSES,
    summary="Queue deletion of all stored data for a topic",
)
@limiter.limit(trigger_limit)
async def clean_topic(
    request: Request,
    slug: str,
    body: CleanRequest | None = None,
    triggers: TopicTriggerService = Depends(get_trigger_service),
) -> TriggerResponse:
    confirm = body.confirm if body else False
    return await _submit(
        "clean", slug, lambda: triggers.request_clean(slug, confirm=confirm, requester="api")
    )
