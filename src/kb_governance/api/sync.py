"""Sync API endpoints: trigger runs, scheduler config, run history."""

import logging

from fastapi import APIRouter, HTTPException, Query, Response, status

from kb_governance.api.dependencies import get_orchestrator, get_sync_issue_recorder
from kb_governance.api.schemas import (
    SyncConfigResponse,
    SyncConfigUpdate,
    SyncIssueResponse,
    SyncRunRequest,
    SyncRunResponse,
    SyncStatusResponse,
)
from kb_governance.db.models import SyncIssueType, SyncTrigger
from kb_governance.exceptions import InvalidSyncModeError, SyncAlreadyRunningError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


@router.post("/run", response_model=SyncRunResponse)
async def run_sync(request: SyncRunRequest, response: Response) -> SyncRunResponse:
    """Start a sync run.

    Returns 202 with the RUNNING record, or 200 with the finished record when
    ``wait`` is set. Returns 409 if another run holds the lock.
    """
    orchestrator = get_orchestrator()
    try:
        if request.wait:
            run = await orchestrator.run_now(request.mode, request.days_back, SyncTrigger.MANUAL)
        else:
            run = await orchestrator.start_background(request.mode, request.days_back, SyncTrigger.MANUAL)
            response.status_code = status.HTTP_202_ACCEPTED
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidSyncModeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SyncRunResponse.model_validate(run)


@router.post("/cancel")
async def cancel_sync() -> dict[str, bool]:
    """Ask the running sync to stop at the next item boundary."""
    return {"cancelled": get_orchestrator().request_cancel()}


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status() -> SyncStatusResponse:
    orchestrator = get_orchestrator()
    latest = await orchestrator.latest_run()
    return SyncStatusResponse(
        running=orchestrator.is_running,
        latest_run=SyncRunResponse.model_validate(latest) if latest else None,
    )


@router.get("/runs/latest", response_model=SyncRunResponse)
async def latest_run() -> SyncRunResponse:
    run = await get_orchestrator().latest_run()
    if run is None:
        raise HTTPException(status_code=404, detail="No sync runs yet")
    return SyncRunResponse.model_validate(run)


@router.get("/runs", response_model=list[SyncRunResponse])
async def list_runs(limit: int = Query(default=20, ge=1, le=200)) -> list[SyncRunResponse]:
    runs = await get_orchestrator().list_runs(limit)
    return [SyncRunResponse.model_validate(run) for run in runs]


@router.get("/runs/{run_id}", response_model=SyncRunResponse)
async def get_run(run_id: int) -> SyncRunResponse:
    run = await get_orchestrator().get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Sync run not found: {run_id}")
    return SyncRunResponse.model_validate(run)


@router.get("/config", response_model=SyncConfigResponse)
async def get_config() -> SyncConfigResponse:
    return SyncConfigResponse.model_validate(await get_orchestrator().get_config())


@router.put("/config", response_model=SyncConfigResponse)
async def update_config(request: SyncConfigUpdate) -> SyncConfigResponse:
    try:
        config = await get_orchestrator().update_config(
            enabled=request.enabled,
            mode=request.mode,
            interval_minutes=request.interval_minutes,
            days_back=request.days_back,
        )
    except InvalidSyncModeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SyncConfigResponse.model_validate(config)


@router.get("/issues", response_model=list[SyncIssueResponse])
async def list_sync_issues(
    article_id: int | None = None,
    issue_type: SyncIssueType | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[SyncIssueResponse]:
    """Unresolved technical sync issues."""
    issues = await get_sync_issue_recorder().list_open(article_id, issue_type, limit)
    return [SyncIssueResponse.model_validate(issue) for issue in issues]
