"""Run history endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query
import structlog

from topic_tracker.api.dependencies import get_run_repository
from topic_tracker.api.models import ErrorResponse, RunItem, RunsResponse, RunSummary
from topic_tracker.storage.repository import RunRepository

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get(
    "/runs",
    response_model=RunsResponse,
    responses={500: {"model": ErrorResponse}},
    summary="List runs",
)
async def list_runs(
    topic: str | None = Query(default=None, description="Filter by topic slug"),
    run_status: str | None = Query(default=None, alias="status", description="Filter by run status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    runs: RunRepository = Depends(get_run_repository),
) -> RunsResponse:
    try:
        items, total = await runs.list_runs(
            topic_slug=topic, status=run_status, limit=limit, offset=offset
        )
    except Exception as e:
        logger.error(f"Failed to list runs: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list runs")

    return RunsResponse(
        runs=[RunItem(**r.to_dict()) for r in items],
        total=total,
        has_more=(offset + limit) < total,
    )


@router.get(
    "/runs/{run_id}",
    response_model=RunItem,
    responses={404: {"model": ErrorResponse}},
    summary="Get a run",
)
async def get_run(
    run_id: str,
    runs: RunRepository = Depends(get_run_repository),
) -> RunItem:
    run = await runs.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return RunItem(**run.to_dict())


@router.get(
    "/runs/{run_id}/summary",
    response_model=RunSummary,
    responses={404: {"model": ErrorResponse, "description": "Unknown run or no summary stored"}},
    summary="Get the digest produced by a run",
)
async def get_run_summary(
    run_id: str,
    runs: RunRepository = Depends(get_run_repository),
) -> RunSummary:
    run = await runs.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")

    summary = run.metadata.get("summary")
    if not summary:
        raise HTTPException(status_code=404, detail=f"No summary stored for run {run_id}")

    finished = run.completed_at or run.created_at
    return RunSummary(
        run_id=run.id,
        topic_slug=run.topic_slug,
        summary=summary,
        created_at=finished.isoformat() if finished else None,
    )
