"""Task ledger endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
import structlog

from topic_tracker.api.dependencies import get_task_ledger
from topic_tracker.api.models import ErrorResponse, TaskItem, TasksResponse, TaskStatsResponse
from topic_tracker.storage.schemas import TaskStatus
from topic_tracker.tasks.ledger import TaskLedger

logger = structlog.get_logger(__name__)
router = APIRouter()

_VALID_STATUSES = {s.value for s in TaskStatus}


@router.get(
    "/tasks",
    response_model=TasksResponse,
    responses={422: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="List tasks",
)
async def list_tasks(
    topic: str | None = Query(default=None, description="Filter by topic slug"),
    task_status: str | None = Query(
        default=None,
        alias="status",
        description="Filter by status: pending, running, completed, failed",
    ),
    limit: int = Query(default=50, ge=1, le=500),
    ledger: TaskLedger = Depends(get_task_ledger),
) -> TasksResponse:
    if task_status and task_status not in _VALID_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid status {task_status!r}. Must be one of: {sorted(_VALID_STATUSES)}",
        )

    try:
        tasks = await ledger.list(topic_slug=topic, status=task_status, limit=limit)
    except Exception as e:
        logger.error(f"Failed to list tasks: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list tasks")

    return TasksResponse(tasks=[TaskItem(**t.to_dict()) for t in tasks], total=len(tasks))


@router.get(
    "/tasks/stats",
    response_model=TaskStatsResponse,
    summary="Task counts by status and kind",
)
async def task_stats(
    ledger: TaskLedger = Depends(get_task_ledger),
) -> TaskStatsResponse:
    return TaskStatsResponse(**await ledger.stats())


@router.get(
    "/tasks/{task_id}",
    response_model=TaskItem,
    responses={404: {"model": ErrorResponse}},
    summary="Get a task",
)
async def get_task(
    task_id: str,
    ledger: TaskLedger = Depends(get_task_ledger),
) -> TaskItem:
    task = await ledger.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return TaskItem(**task.to_dict())


@router.delete(
    "/tasks/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete a task",
)
async def delete_task(
    task_id: str,
    ledger: TaskLedger = Depends(get_task_ledger),
) -> None:
    if not await ledger.delete(task_id):
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    logger.info("Task deleted", task_id=task_id)
