"""Duplicate content group endpoints."""

import logging

from fastapi import APIRouter, HTTPException

from kb_governance.api.dependencies import get_duplicate_detector, get_duplicate_service
from kb_governance.api.schemas import (
    AnalyzeResponse,
    BulkUpdateResponse,
    DuplicateGroupResponse,
    IgnoreGroupRequest,
    MergeRequest,
    SetPrimaryRequest,
)
from kb_governance.exceptions import DuplicateGroupNotFoundError, GovernanceError
from kb_governance.governance.issues import BulkUpdateResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/governance/duplicates", tags=["duplicates"])


def _bulk_response(result: BulkUpdateResult) -> BulkUpdateResponse:
    return BulkUpdateResponse(updated=result.updated, unchanged=result.unchanged, failed=result.failed)


def _to_http(error: GovernanceError) -> HTTPException:
    if isinstance(error, DuplicateGroupNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    return HTTPException(status_code=422, detail=str(error))


@router.get("", response_model=list[DuplicateGroupResponse])
async def list_groups(include_closed: bool = False) -> list[DuplicateGroupResponse]:
    groups = await get_duplicate_service().list_groups(include_closed=include_closed)
    return [DuplicateGroupResponse.model_validate(group) for group in groups]


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze_duplicates() -> AnalyzeResponse:
    """Re-scan all content hashes and open or refresh duplicate issues."""
    opened = await get_duplicate_detector().analyze_all()
    return AnalyzeResponse(findings=opened, duplicate_issues=opened)


@router.post("/reconcile", response_model=AnalyzeResponse)
async def reconcile_duplicates(actor: str = "system") -> AnalyzeResponse:
    """Resolve duplicate issues whose group no longer exists."""
    resolved = await get_duplicate_detector().reconcile(actor)
    return AnalyzeResponse(findings=resolved, duplicate_issues=resolved)


@router.get("/{content_hash}", response_model=DuplicateGroupResponse)
async def get_group(content_hash: str) -> DuplicateGroupResponse:
    try:
        return DuplicateGroupResponse.model_validate(await get_duplicate_service().get_group(content_hash))
    except GovernanceError as e:
        raise _to_http(e)


@router.post("/{content_hash}/primary", response_model=BulkUpdateResponse)
async def set_primary(content_hash: str, request: SetPrimaryRequest) -> BulkUpdateResponse:
    try:
        result = await get_duplicate_service().set_primary(
            content_hash, request.primary_article_id, request.actor, request.note
        )
    except GovernanceError as e:
        raise _to_http(e)
    return _bulk_response(result)


@router.post("/{content_hash}/ignore", response_model=BulkUpdateResponse)
async def ignore_group(content_hash: str, request: IgnoreGroupRequest) -> BulkUpdateResponse:
    try:
        result = await get_duplicate_service().ignore_group(content_hash, request.actor, request.reason)
    except GovernanceError as e:
        raise _to_http(e)
    return _bulk_response(result)


@router.post("/{content_hash}/merge", response_model=BulkUpdateResponse)
async def request_merge(content_hash: str, request: MergeRequest) -> BulkUpdateResponse:
    try:
        result = await get_duplicate_service().request_merge(content_hash, request.actor, request.note)
    except GovernanceError as e:
        raise _to_http(e)
    return _bulk_response(result)
