"""API request and response schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from kb_governance.db.models import (
    AssignmentStatus,
    IssueStatus,
    IssueType,
    ResponsibleType,
    Severity,
    SyncIssueType,
    SyncMode,
    SyncRunStatus,
    SyncTrigger,
)


# =============================================================================
# Sync
# =============================================================================


class SyncRunRequest(BaseModel):
    """Manual sync trigger."""

    mode: str | None = Field(
        default=None,
        description="FULL, DELTA_WINDOW or DELTA_SURGICAL (aliases: DELTA, INCREMENTAL, SURGICAL)",
    )
    days_back: int | None = Field(default=None, ge=0, description="Window size for DELTA_WINDOW")
    wait: bool = Field(default=False, description="Block until the run finishes")

    model_config = {"json_schema_extra": {
        "example": {"mode": "DELTA_WINDOW", "days_back": 2, "wait": False}
    }}


class SyncRunResponse(BaseModel):
    """One sync run record."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    mode: SyncMode
    trigger: SyncTrigger
    status: SyncRunStatus
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: int | None = None
    days_back: int | None = None
    synced_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    not_found_count: int = 0
    error_count: int = 0
    processed_count: int = 0
    note: str | None = None


class SyncConfigResponse(BaseModel):
    """Scheduler configuration."""

    model_config = ConfigDict(from_attributes=True)

    enabled: bool
    mode: SyncMode
    interval_minutes: int
    days_back: int
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    updated_at: datetime | None = None


class SyncConfigUpdate(BaseModel):
    """Partial update of the scheduler configuration."""

    enabled: bool | None = None
    mode: str | None = None
    interval_minutes: int | None = Field(default=None, ge=1)
    days_back: int | None = Field(default=None, ge=0)


class SyncStatusResponse(BaseModel):
    """Current state of the orchestrator."""

    running: bool
    latest_run: SyncRunResponse | None = None


class SyncIssueResponse(BaseModel):
    """Technical sync problem for one article."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    article_id: int
    issue_type: SyncIssueType
    message: str | None = None
    resolved: bool
    created_at: datetime
    updated_at: datetime


# =============================================================================
# Governance issues
# =============================================================================


class IssueResponse(BaseModel):
    """Governance issue."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    article_id: int
    issue_type: IssueType
    severity: Severity
    status: IssueStatus
    message: str | None = None
    evidence: dict[str, Any] | None = None
    responsible_id: str | None = None
    responsible_type: ResponsibleType | None = None
    sla_due_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    ignored_reason: str | None = None


class IssueHistoryResponse(BaseModel):
    """Audit trail entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    issue_id: int
    action: str
    old_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    note: str | None = None
    actor: str | None = None
    created_at: datetime


class AssignmentResponse(BaseModel):
    """Assignment record."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    issue_id: int
    agent_id: str
    agent_name: str | None = None
    due_date: datetime | None = None
    status: AssignmentStatus
    ticket_id: str | None = None
    ticket_protocol: str | None = None
    created_by: str | None = None
    created_at: datetime


class AssignRequest(BaseModel):
    """Assign (or unassign, with an empty responsible) an issue."""

    responsible_id: str | None = Field(default=None, description="Empty to unassign")
    responsible_name: str | None = None
    responsible_type: ResponsibleType = ResponsibleType.USER
    due_date: datetime | None = None
    create_ticket: bool = False
    note: str | None = None
    actor: str = Field(..., min_length=1)


class StatusChangeRequest(BaseModel):
    """Move an issue to a new status."""

    status: IssueStatus
    actor: str = Field(..., min_length=1)
    ignored_reason: str | None = None
    note: str | None = None


class BulkStatusRequest(BaseModel):
    """Apply the same status change to several issues."""

    issue_ids: list[int] = Field(..., min_length=1)
    status: IssueStatus
    actor: str = Field(..., min_length=1)
    ignored_reason: str | None = None
    note: str | None = None


class BulkUpdateResponse(BaseModel):
    """Per-issue outcome of a bulk change."""

    updated: list[int] = Field(default_factory=list)
    unchanged: list[int] = Field(default_factory=list)
    failed: dict[int, str] = Field(default_factory=dict)


class SlaSummaryResponse(BaseModel):
    """Live issue counts by SLA state and severity."""

    open: int
    overdue: int
    due_soon: int
    by_severity: dict[str, int]


class AnalyzeResponse(BaseModel):
    """Result of a manual detector pass."""

    findings: int
    article_id: int | None = None
    duplicate_issues: int | None = None


# =============================================================================
# Duplicates
# =============================================================================


class DuplicateMemberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    article_id: int
    issue_id: int
    status: IssueStatus
    title: str | None = None


class DuplicateGroupResponse(BaseModel):
    """Articles sharing the same content fingerprint."""

    model_config = ConfigDict(from_attributes=True)

    content_hash: str
    status: IssueStatus
    members: list[DuplicateMemberResponse]


class SetPrimaryRequest(BaseModel):
    primary_article_id: int
    actor: str = Field(..., min_length=1)
    note: str | None = None


class IgnoreGroupRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class MergeRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    note: str | None = None
