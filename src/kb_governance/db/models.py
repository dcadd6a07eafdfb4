"""SQLAlchemy models for the article mirror, sync runs and governance issues.

All timestamps are stored as UTC. SQLite has no timezone support, so the
``UTCDateTime`` column type strips the offset on write and re-attaches UTC on
read; the rest of the code only ever sees aware datetimes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.types import TypeDecorator

from kb_governance.exceptions import IgnoredReasonRequiredError, InvalidSyncModeError
from kb_governance.timeutils import utcnow


class UTCDateTime(TypeDecorator):
    """DateTime column that always round-trips aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class SyncState(str, Enum):
    """What the last sync observed for an article."""

    NEW = "NEW"
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"
    SYNCED = "SYNCED"
    MISSING = "MISSING"


class SyncStatus(str, Enum):
    """Outcome of the last fetch of an article."""

    OK = "OK"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"


class SyncMode(str, Enum):
    """Sync strategy."""

    FULL = "FULL"
    DELTA_WINDOW = "DELTA_WINDOW"
    DELTA_SURGICAL = "DELTA_SURGICAL"

    @classmethod
    def parse(cls, value: "str | SyncMode | None", default: "SyncMode | None" = None) -> "SyncMode":
        """Resolve a mode name, accepting the legacy aliases used by operators."""
        if isinstance(value, SyncMode):
            return value
        if value is None or not str(value).strip():
            if default is None:
                raise InvalidSyncModeError(str(value))
            return default
        key = str(value).strip().upper()
        mode = _SYNC_MODE_ALIASES.get(key)
        if mode is None:
            raise InvalidSyncModeError(str(value))
        return mode


_SYNC_MODE_ALIASES = {
    "FULL": SyncMode.FULL,
    "DELTA": SyncMode.DELTA_WINDOW,
    "DELTA_WINDOW": SyncMode.DELTA_WINDOW,
    "INCREMENTAL": SyncMode.DELTA_WINDOW,
    "DELTA_SURGICAL": SyncMode.DELTA_SURGICAL,
    "SURGICAL": SyncMode.DELTA_SURGICAL,
    "DELTA_SMART": SyncMode.DELTA_SURGICAL,
}


class SyncRunStatus(str, Enum):
    """Sync run lifecycle."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class SyncTrigger(str, Enum):
    """Who started a sync run."""

    MANUAL = "MANUAL"
    SCHEDULER = "SCHEDULER"
    CLI = "CLI"


class SyncIssueType(str, Enum):
    """Technical problems seen while mirroring an article."""

    NOT_FOUND = "NOT_FOUND"
    EMPTY_CONTENT = "EMPTY_CONTENT"
    MENU_NULL = "MENU_NULL"
    MENU_NOT_MAPPED = "MENU_NOT_MAPPED"
    ERROR = "ERROR"


class IssueType(str, Enum):
    """Governance issue types."""

    DUPLICATE_CONTENT = "DUPLICATE_CONTENT"
    INCOMPLETE_CONTENT = "INCOMPLETE_CONTENT"
    INCONSISTENT_CONTENT = "INCONSISTENT_CONTENT"
    OUTDATED_CONTENT = "OUTDATED_CONTENT"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    NOT_AI_READY = "NOT_AI_READY"


class Severity(str, Enum):
    """Governance issue severity."""

    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class IssueStatus(str, Enum):
    """Governance issue lifecycle status."""

    OPEN = "OPEN"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    IGNORED = "IGNORED"

    @property
    def is_terminal(self) -> bool:
        return self in (IssueStatus.RESOLVED, IssueStatus.IGNORED)


class ResponsibleType(str, Enum):
    """Kind of owner an issue is assigned to."""

    USER = "USER"
    TEAM = "TEAM"


class AssignmentStatus(str, Enum):
    """Status of an assignment record."""

    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class HistoryAction(str, Enum):
    """Audit trail actions written by the issue lifecycle manager."""

    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    UNASSIGNED = "UNASSIGNED"
    STATUS_CHANGED = "STATUS_CHANGED"
    REOPENED = "REOPENED"
    IGNORED = "IGNORED"


def _enum(enum_cls: type[Enum], length: int = 32) -> SAEnum:
    return SAEnum(enum_cls, native_enum=False, length=length, validate_strings=True)


# =============================================================================
# Classification
# =============================================================================


class KbSystem(Base):
    """Internal system (product/module) an article is classified under."""

    __tablename__ = "kb_systems"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(256))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<KbSystem(code={self.code})>"


class MenuMapping(Base):
    """Maps a source menu (category) to an internal system."""

    __tablename__ = "kb_menu_map"
    __table_args__ = (UniqueConstraint("source_system", "source_menu_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_system: Mapped[str] = mapped_column(String(32), index=True)
    source_menu_id: Mapped[int] = mapped_column(Integer, index=True)
    source_menu_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    system_id: Mapped[int] = mapped_column(ForeignKey("kb_systems.id"))
    active: Mapped[bool] = mapped_column(Boolean, default=True)


# =============================================================================
# Article mirror
# =============================================================================


class Article(Base):
    """Local mirror of one source knowledge-base article."""

    __tablename__ = "articles"

    # Source article id, never generated locally
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    slug: Mapped[str | None] = mapped_column(String(512), nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    article_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Null only when both content variants are empty
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reading_time: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Classification
    system_id: Mapped[int | None] = mapped_column(ForeignKey("kb_systems.id"), nullable=True)
    source_menu_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source_menu_name: Mapped[str | None] = mapped_column(String(256), nullable=True)

    # Source-side versioning
    revision_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source_created_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    source_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    source_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    # Sync tracking
    fetched_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    sync_state: Mapped[SyncState] = mapped_column(_enum(SyncState, 16), default=SyncState.NEW)
    sync_status: Mapped[SyncStatus] = mapped_column(_enum(SyncStatus, 16), default=SyncStatus.OK)
    sync_error_message: Mapped[str | None] = mapped_column(String(400), nullable=True)

    def __repr__(self) -> str:
        return f"<Article(id={self.id}, state={self.sync_state}, status={self.sync_status})>"


class SyncRun(Base):
    """One execution of the sync orchestrator. Append-only once finished."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mode: Mapped[SyncMode] = mapped_column(_enum(SyncMode))
    trigger: Mapped[SyncTrigger] = mapped_column(_enum(SyncTrigger, 16), default=SyncTrigger.MANUAL)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[SyncRunStatus] = mapped_column(
        _enum(SyncRunStatus, 16), default=SyncRunStatus.RUNNING, index=True
    )
    days_back: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Counters
    synced_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    not_found_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)

    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def processed_count(self) -> int:
        return (
            self.synced_count
            + self.updated_count
            + self.skipped_count
            + self.not_found_count
            + self.error_count
        )

    def __repr__(self) -> str:
        return f"<SyncRun(id={self.id}, mode={self.mode}, status={self.status})>"


class SyncConfig(Base):
    """Singleton row (id=1) holding scheduler configuration."""

    __tablename__ = "sync_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    mode: Mapped[SyncMode] = mapped_column(_enum(SyncMode), default=SyncMode.DELTA_WINDOW)
    interval_minutes: Mapped[int] = mapped_column(Integer, default=60)
    days_back: Mapped[int] = mapped_column(Integer, default=0)  # 0 = since last success
    last_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class SyncIssue(Base):
    """Technical sync problem for one article (one unresolved row per type)."""

    __tablename__ = "sync_issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    article_id: Mapped[int] = mapped_column(Integer, index=True)
    issue_type: Mapped[SyncIssueType] = mapped_column(_enum(SyncIssueType, 32), index=True)
    message: Mapped[str | None] = mapped_column(String(400), nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<SyncIssue(article={self.article_id}, type={self.issue_type}, resolved={self.resolved})>"


# =============================================================================
# Governance
# =============================================================================


class GovernanceIssue(Base):
    """Content-quality problem for one article and one issue type."""

    __tablename__ = "governance_issues"
    # One row per (article, type); reopening toggles status instead of inserting
    __table_args__ = (UniqueConstraint("article_id", "issue_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    article_id: Mapped[int] = mapped_column(Integer, index=True)
    issue_type: Mapped[IssueType] = mapped_column(_enum(IssueType), index=True)
    severity: Mapped[Severity] = mapped_column(_enum(Severity, 8))
    status: Mapped[IssueStatus] = mapped_column(
        _enum(IssueStatus, 16), default=IssueStatus.OPEN, index=True
    )
    message: Mapped[str | None] = mapped_column(String(400), nullable=True)
    evidence: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Ownership
    responsible_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    responsible_type: Mapped[ResponsibleType | None] = mapped_column(
        _enum(ResponsibleType, 8), nullable=True
    )

    # SLA and resolution
    sla_due_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ignored_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def check_invariants(self) -> None:
        """Reject states that must never reach the database."""
        if self.status == IssueStatus.IGNORED and not (self.ignored_reason or "").strip():
            raise IgnoredReasonRequiredError(self.id)

    def __repr__(self) -> str:
        return (
            f"<GovernanceIssue(article={self.article_id}, type={self.issue_type}, "
            f"severity={self.severity}, status={self.status})>"
        )


class GovernanceIssueAssignment(Base):
    """Assignment of an issue to an agent, optionally backed by a ticket."""

    __tablename__ = "governance_issue_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    issue_id: Mapped[int] = mapped_column(ForeignKey("governance_issues.id"), index=True)
    agent_id: Mapped[str] = mapped_column(String(64))
    agent_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[AssignmentStatus] = mapped_column(
        _enum(AssignmentStatus, 16), default=AssignmentStatus.OPEN
    )
    ticket_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ticket_protocol: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class GovernanceIssueHistory(Base):
    """Append-only audit trail entry for a governance issue."""

    __tablename__ = "governance_issue_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    issue_id: Mapped[int] = mapped_column(ForeignKey("governance_issues.id"), index=True)
    action: Mapped[str] = mapped_column(String(32))  # HistoryAction or a bulk label
    old_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor: Mapped[str] = mapped_column(String(128), default="system")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<GovernanceIssueHistory(issue={self.issue_id}, action={self.action})>"


@event.listens_for(Session, "before_flush")
def _check_governance_invariants(session: Session, flush_context, instances) -> None:
    """Validate every pending governance issue before it is written."""
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, GovernanceIssue):
            obj.check_invariants()


@event.listens_for(GovernanceIssueHistory, "before_update")
@event.listens_for(GovernanceIssueHistory, "before_delete")
def _history_is_append_only(mapper, connection, target) -> None:
    raise RuntimeError("governance issue history is append-only")
