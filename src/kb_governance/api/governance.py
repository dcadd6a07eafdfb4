"""Governance issue API endpoints."""

import logging

from fastapi import APIRouter, HTTPException, Query

from kb_governance.api.dependencies import get_lifecycle, get_orchestrator
from kb_governance.api.schemas import (
    AnalyzeResponse,
    AssignmentResponse,
    AssignRequest,
    BulkStatusRequest,
    BulkUpdateResponse,
    IssueHistoryResponse,
    IssueResponse,
    SlaSummaryResponse,
    StatusChangeRequest,
)
from kb_governance.config import settings
from kb_governance.db.models import IssueStatus, IssueType, Severity
from kb_governance.exceptions import (
    GovernanceError,
    IgnoredReasonRequiredError,
    InvalidTransitionError,
    IssueNotFoundError,
)
from kb_governance.governance.issues import IssueFilters

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/governance", tags=["governance"])


def _to_http(error: GovernanceError) -> HTTPException:
    if isinstance(error, IssueNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (IgnoredReasonRequiredError, InvalidTransitionError)):
        return HTTPException(status_code=422, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


@router.get("/issues", response_model=list[IssueResponse])
async def list_issues(
    article_id: int | None = None,
    issue_type: IssueType | None = None,
    severity: Severity | None = None,
    status: list[IssueStatus] = Query(default=[]),
    responsible_id: str | None = None,
    overdue_only: bool = False,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> list[IssueResponse]:
    filters = IssueFilters(
        article_id=article_id,
        issue_type=issue_type,
        severity=severity,
        statuses=status,
        responsible_id=responsible_id,
        overdue_only=overdue_only,
        limit=limit,
        offset=offset,
    )
    issues = await get_lifecycle().list_issues(filters)
    return [IssueResponse.model_validate(issue) for issue in issues]


@router.get("/issues/sla", response_model=SlaSummaryResponse)
async def sla_summary() -> SlaSummaryResponse:
    return SlaSummaryResponse(**await get_lifecycle().sla_summary())


@router.get("/issues/{issue_id}", response_model=IssueResponse)
async def get_issue(issue_id: int) -> IssueResponse:
    try:
        return IssueResponse.model_validate(await get_lifecycle().get(issue_id))
    except GovernanceError as e:
        raise _to_http(e)


@router.get("/issues/{issue_id}/history", response_model=list[IssueHistoryResponse])
async def get_history(issue_id: int) -> list[IssueHistoryResponse]:
    try:
        entries = await get_lifecycle().get_history(issue_id)
    except GovernanceError as e:
        raise _to_http(e)
    return [IssueHistoryResponse.model_validate(entry) for entry in entries]


@router.get("/issues/{issue_id}/assignments", response_model=list[AssignmentResponse])
async def get_assignments(issue_id: int) -> list[AssignmentResponse]:
    try:
        rows = await get_lifecycle().get_assignments(issue_id)
    except GovernanceError as e:
        raise _to_http(e)
    return [AssignmentResponse.model_validate(row) for row in rows]


@router.post("/issues/{issue_id}/assign", response_model=IssueResponse)
async def assign_issue(issue_id: int, request: AssignRequest) -> IssueResponse:
    try:
        issue = await get_lifecycle().assign(
            issue_id,
            request.responsible_id,
            request.actor,
            responsible_name=request.responsible_name,
            responsible_type=request.responsible_type,
            due_date=request.due_date,
            create_ticket=request.create_ticket,
            note=request.note,
        )
    except GovernanceError as e:
        raise _to_http(e)
    return IssueResponse.model_validate(issue)


@router.post("/issues/{issue_id}/status", response_model=IssueResponse)
async def change_status(issue_id: int, request: StatusChangeRequest) -> IssueResponse:
    try:
        issue = await get_lifecycle().update_status(
            issue_id,
            request.status,
            request.actor,
            ignored_reason=request.ignored_reason,
            note=request.note,
        )
    except GovernanceError as e:
        raise _to_http(e)
    return IssueResponse.model_validate(issue)


@router.post("/issues/bulk-status", response_model=BulkUpdateResponse)
async def bulk_status(request: BulkStatusRequest) -> BulkUpdateResponse:
    """Apply one status change to many issues; each issue succeeds or fails on its own."""
    try:
        result = await get_lifecycle().bulk_update_status(
            request.issue_ids,
            request.status,
            request.actor,
            note=request.note,
            ignored_reason=request.ignored_reason,
        )
    except GovernanceError as e:
        raise _to_http(e)
    return BulkUpdateResponse(updated=result.updated, unchanged=result.unchanged, failed=result.failed)


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze(
    article_id: int | None = None,
    limit: int = Query(default=settings.GOVERNANCE_RECENT_LIMIT, ge=1, le=10000),
) -> AnalyzeResponse:
    """Run the content detectors on one article or on the most recent ones."""
    detectors = get_orchestrator().detectors
    if article_id is not None:
        findings = await detectors.analyze_article(article_id)
        return AnalyzeResponse(article_id=article_id, findings=findings)
    findings = await detectors.analyze_recent(limit)
    return AnalyzeResponse(findings=findings)
