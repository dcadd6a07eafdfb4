"""Governance issue lifecycle: open, reopen, assign, change status.

Every issue is keyed by (article, issue type). Detectors call ``open`` each time
they observe a problem; the manager decides whether that creates a new issue,
reopens a closed one with a fresh SLA window, or just refreshes a live one.
All transitions append to the issue history, which is never rewritten.
"""

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kb_governance.config import settings
from kb_governance.db.database import async_session_maker
from kb_governance.db.models import (
    AssignmentStatus,
    GovernanceIssue,
    GovernanceIssueAssignment,
    GovernanceIssueHistory,
    HistoryAction,
    IssueStatus,
    IssueType,
    ResponsibleType,
    Severity,
)
from kb_governance.exceptions import (
    GovernanceError,
    IgnoredReasonRequiredError,
    InvalidTransitionError,
    IssueNotFoundError,
)
from kb_governance.governance.sla import GovernanceSlaService
from kb_governance.source.models import TicketRequest
from kb_governance.timeutils import utcnow

if TYPE_CHECKING:
    from kb_governance.source.client import SourceClient

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
MESSAGE_MAX_LENGTH = 400
WRITE_ATTEMPTS = 2

T = TypeVar("T")


async def commit_with_retry(
    session_maker: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
) -> T:
    """Run ``work`` in one transaction and commit it.

    Detectors write issues through ``open_in_session``. When a concurrent pass
    inserts the same (article, type) first, the unique key rejects our insert;
    the unit is rolled back and run once more, and the second attempt finds
    the committed row and refreshes it.
    """
    for attempt in range(1, WRITE_ATTEMPTS + 1):
        async with session_maker() as session:
            try:
                result = await work(session)
                await session.commit()
                return result
            except IntegrityError as e:
                await session.rollback()
                if attempt == WRITE_ATTEMPTS:
                    raise
                logger.debug(f"Concurrent write rejected ({e.orig}), retrying")
    raise GovernanceError("Transaction retries exhausted")  # pragma: no cover


def _truncate(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    return value if len(value) <= limit else value[:limit]


def _snapshot(issue: GovernanceIssue) -> dict[str, Any]:
    """Values captured before/after a transition for the audit trail."""
    return {
        "status": IssueStatus(issue.status).value,
        "sla_due_at": issue.sla_due_at.isoformat() if issue.sla_due_at else None,
        "responsible_id": issue.responsible_id,
        "responsible_type": ResponsibleType(issue.responsible_type).value
        if issue.responsible_type
        else None,
    }


@dataclass
class IssueFilters:
    """Filters for listing governance issues."""

    article_id: int | None = None
    issue_type: IssueType | None = None
    severity: Severity | None = None
    statuses: list[IssueStatus] = field(default_factory=list)
    responsible_id: str | None = None
    overdue_only: bool = False
    limit: int = 100
    offset: int = 0


@dataclass
class BulkUpdateResult:
    """Outcome of a bulk status change; each issue is handled independently."""

    updated: list[int] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


class IssueLifecycleManager:
    """State machine for governance issues with SLA and audit history."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        sla: GovernanceSlaService | None = None,
        ticketing: "SourceClient | None" = None,
    ):
        self.session_maker = session_maker or async_session_maker
        self.sla = sla or GovernanceSlaService()
        self.ticketing = ticketing
        # Entries live only while some caller holds the lock
        self._open_locks: weakref.WeakValueDictionary[tuple[int, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------
    # Detection entry point
    # ------------------------------------------------------------------

    async def open(
        self,
        article_id: int,
        issue_type: IssueType,
        severity: Severity,
        message: str | None,
        evidence: dict[str, Any] | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> GovernanceIssue:
        """Create, reopen or refresh the issue for (article, type) in its own transaction."""
        key = (article_id, IssueType(issue_type).value)
        lock = self._open_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._open_locks[key] = lock
        async with lock:
            return await commit_with_retry(
                self.session_maker,
                lambda session: self.open_in_session(
                    session, article_id, issue_type, severity, message, evidence, actor
                ),
            )

    async def open_in_session(
        self,
        session: AsyncSession,
        article_id: int,
        issue_type: IssueType,
        severity: Severity,
        message: str | None,
        evidence: dict[str, Any] | None = None,
        actor: str = SYSTEM_ACTOR,
        reopen_closed: bool = True,
    ) -> GovernanceIssue:
        """Same as ``open`` but inside the caller's transaction (no commit).

        With ``reopen_closed=False`` a RESOLVED or IGNORED issue is left as is.
        """
        issue_type = IssueType(issue_type)
        severity = Severity(severity)
        message = _truncate(message, MESSAGE_MAX_LENGTH)
        now = utcnow()

        issue = await self.find_current(session, article_id, issue_type)

        if issue is None:
            issue = GovernanceIssue(
                article_id=article_id,
                issue_type=issue_type,
                severity=severity,
                status=IssueStatus.OPEN,
                message=message,
                evidence=evidence,
                sla_due_at=self.sla.calculate_due_at(now, severity),
                created_at=now,
                updated_at=now,
            )
            session.add(issue)
            await session.flush()
            self._record(session, issue, HistoryAction.CREATED, None, _snapshot(issue), actor)
            logger.info(f"Opened {issue_type.value} ({severity.value}) for article {article_id}")
            return issue

        if IssueStatus(issue.status).is_terminal:
            if not reopen_closed:
                return issue
            before = _snapshot(issue)
            issue.status = IssueStatus.OPEN
            issue.severity = severity
            issue.message = message
            issue.evidence = evidence
            issue.resolved_at = None
            issue.resolved_by = None
            issue.ignored_reason = None
            issue.sla_due_at = self.sla.calculate_reopened_due_at(severity, now)
            issue.updated_at = now
            after = _snapshot(issue)
            self._record(session, issue, HistoryAction.REOPENED, before, after, actor, note=message)
            self._record(session, issue, HistoryAction.STATUS_CHANGED, before, after, actor)
            logger.info(f"Reopened {issue_type.value} for article {article_id} (was {before['status']})")
            return issue

        # Live issue: idempotent refresh, no history
        if Severity(issue.severity) != severity:
            issue.sla_due_at = self.sla.calculate_due_at(issue.created_at, severity)
        issue.severity = severity
        issue.message = message
        issue.evidence = evidence
        issue.updated_at = now
        return issue

    async def resolve_if_live_in_session(
        self,
        session: AsyncSession,
        article_id: int,
        issue_type: IssueType,
        actor: str = SYSTEM_ACTOR,
        note: str | None = None,
    ) -> bool:
        """Resolve the (article, type) issue when a detector no longer sees the problem."""
        issue = await self.find_current(session, article_id, issue_type)
        if issue is None or IssueStatus(issue.status).is_terminal:
            return False
        return await self._apply_status(session, issue, IssueStatus.RESOLVED, actor, None, note)

    # ------------------------------------------------------------------
    # Workflow actions
    # ------------------------------------------------------------------

    async def assign(
        self,
        issue_id: int,
        responsible_id: str | None,
        actor: str,
        responsible_name: str | None = None,
        responsible_type: ResponsibleType = ResponsibleType.USER,
        due_date: datetime | None = None,
        create_ticket: bool = False,
        note: str | None = None,
    ) -> GovernanceIssue:
        """Assign an issue to a responsible, or unassign it when the responsible is blank."""
        async with self.session_maker() as session:
            issue = await self._get(session, issue_id)
            before = _snapshot(issue)
            now = utcnow()

            if not responsible_id or not responsible_id.strip():
                if issue.responsible_id is None and issue.status != IssueStatus.ASSIGNED:
                    return issue
                issue.responsible_id = None
                issue.responsible_type = None
                if issue.status == IssueStatus.ASSIGNED:
                    issue.status = IssueStatus.OPEN
                issue.updated_at = now
                await self._close_assignments(session, issue.id, AssignmentStatus.DONE)
                self._record(
                    session, issue, HistoryAction.UNASSIGNED, before, _snapshot(issue), actor, note=note
                )
                await session.commit()
                logger.info(f"Issue {issue_id} unassigned by {actor}")
                return issue

            if IssueStatus(issue.status).is_terminal:
                raise InvalidTransitionError(
                    f"Issue {issue_id} is {IssueStatus(issue.status).value}; reopen it before assigning",
                    current_status=IssueStatus(issue.status).value,
                )

            responsible_id = responsible_id.strip()
            assignment = GovernanceIssueAssignment(
                issue_id=issue.id,
                agent_id=responsible_id,
                agent_name=responsible_name,
                due_date=due_date or issue.sla_due_at,
                status=AssignmentStatus.OPEN,
                created_by=actor,
                created_at=now,
            )
            if create_ticket:
                ticket = await self._create_ticket(issue, responsible_id, note)
                assignment.ticket_id = ticket.id
                assignment.ticket_protocol = ticket.protocol

            await self._close_assignments(session, issue.id, AssignmentStatus.DONE)
            session.add(assignment)

            issue.responsible_id = responsible_id
            issue.responsible_type = ResponsibleType(responsible_type)
            issue.status = IssueStatus.ASSIGNED
            issue.updated_at = now
            self._record(
                session, issue, HistoryAction.ASSIGNED, before, _snapshot(issue), actor, note=note
            )
            await session.commit()
            logger.info(f"Issue {issue_id} assigned to {responsible_id} by {actor}")
            return issue

    async def update_status(
        self,
        issue_id: int,
        new_status: IssueStatus,
        actor: str,
        ignored_reason: str | None = None,
        note: str | None = None,
    ) -> GovernanceIssue:
        """Move one issue to a new status."""
        async with self.session_maker() as session:
            issue = await self._get(session, issue_id)
            await self._apply_status(session, issue, IssueStatus(new_status), actor, ignored_reason, note)
            await session.commit()
            return issue

    async def ignore(self, issue_id: int, actor: str, reason: str) -> GovernanceIssue:
        return await self.update_status(issue_id, IssueStatus.IGNORED, actor, ignored_reason=reason)

    async def bulk_update_status(
        self,
        issue_ids: list[int],
        new_status: IssueStatus,
        actor: str,
        action_label: str | None = None,
        note: str | None = None,
        ignored_reason: str | None = None,
    ) -> BulkUpdateResult:
        """Apply a status change to many issues, each in its own transaction.

        A failure on one issue is recorded in the result and does not stop the rest.
        """
        new_status = IssueStatus(new_status)
        if new_status == IssueStatus.IGNORED and not (ignored_reason or note or "").strip():
            raise IgnoredReasonRequiredError()

        result = BulkUpdateResult()
        for issue_id in dict.fromkeys(issue_ids):
            async with self.session_maker() as session:
                try:
                    issue = await self._get(session, issue_id)
                    changed = await self._apply_status(
                        session,
                        issue,
                        new_status,
                        actor,
                        ignored_reason or note,
                        note,
                        action_label=action_label,
                    )
                    await session.commit()
                except GovernanceError as e:
                    await session.rollback()
                    result.failed[issue_id] = str(e)
                    logger.warning(f"Bulk status change skipped issue {issue_id}: {e}")
                    continue
            if changed:
                result.updated.append(issue_id)
            else:
                result.unchanged.append(issue_id)

        logger.info(
            f"Bulk {action_label or 'status change'} to {new_status.value}: "
            f"{len(result.updated)} updated, {len(result.unchanged)} unchanged, "
            f"{len(result.failed)} failed"
        )
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, issue_id: int) -> GovernanceIssue:
        async with self.session_maker() as session:
            return await self._get(session, issue_id)

    async def get_history(self, issue_id: int) -> list[GovernanceIssueHistory]:
        """Audit trail for one issue, oldest first."""
        async with self.session_maker() as session:
            await self._get(session, issue_id)
            result = await session.execute(
                select(GovernanceIssueHistory)
                .where(GovernanceIssueHistory.issue_id == issue_id)
                .order_by(GovernanceIssueHistory.created_at, GovernanceIssueHistory.id)
            )
            return list(result.scalars().all())

    async def get_assignments(self, issue_id: int) -> list[GovernanceIssueAssignment]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(GovernanceIssueAssignment)
                .where(GovernanceIssueAssignment.issue_id == issue_id)
                .order_by(GovernanceIssueAssignment.id)
            )
            return list(result.scalars().all())

    async def list_issues(self, filters: IssueFilters | None = None) -> list[GovernanceIssue]:
        filters = filters or IssueFilters()
        query = select(GovernanceIssue)
        if filters.article_id is not None:
            query = query.where(GovernanceIssue.article_id == filters.article_id)
        if filters.issue_type is not None:
            query = query.where(GovernanceIssue.issue_type == IssueType(filters.issue_type))
        if filters.severity is not None:
            query = query.where(GovernanceIssue.severity == Severity(filters.severity))
        if filters.statuses:
            query = query.where(GovernanceIssue.status.in_([IssueStatus(s) for s in filters.statuses]))
        if filters.responsible_id:
            query = query.where(GovernanceIssue.responsible_id == filters.responsible_id)
        if filters.overdue_only:
            query = query.where(
                GovernanceIssue.sla_due_at < utcnow(),
                GovernanceIssue.status.notin_([IssueStatus.RESOLVED, IssueStatus.IGNORED]),
            )
        query = (
            query.order_by(GovernanceIssue.sla_due_at.is_(None), GovernanceIssue.sla_due_at, GovernanceIssue.id)
            .limit(filters.limit)
            .offset(filters.offset)
        )
        async with self.session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def sla_summary(self, now: datetime | None = None) -> dict[str, Any]:
        """Counts of live issues by SLA state and severity."""
        now = now or utcnow()
        async with self.session_maker() as session:
            result = await session.execute(
                select(GovernanceIssue).where(
                    GovernanceIssue.status.notin_([IssueStatus.RESOLVED, IssueStatus.IGNORED])
                )
            )
            live = list(result.scalars().all())

        summary: dict[str, Any] = {
            "open": len(live),
            "overdue": 0,
            "due_soon": 0,
            "by_severity": {s.value: 0 for s in Severity},
        }
        for issue in live:
            summary["by_severity"][Severity(issue.severity).value] += 1
            if self.sla.is_overdue(now, issue.sla_due_at, issue.status):
                summary["overdue"] += 1
            elif self.sla.is_due_soon(now, issue.sla_due_at, issue.status):
                summary["due_soon"] += 1
        return summary

    async def find_current(
        self, session: AsyncSession, article_id: int, issue_type: IssueType
    ) -> GovernanceIssue | None:
        """Most recent issue for (article, type), if any."""
        result = await session.execute(
            select(GovernanceIssue)
            .where(
                GovernanceIssue.article_id == article_id,
                GovernanceIssue.issue_type == IssueType(issue_type),
            )
            .order_by(GovernanceIssue.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get(self, session: AsyncSession, issue_id: int) -> GovernanceIssue:
        issue = await session.get(GovernanceIssue, issue_id)
        if issue is None:
            raise IssueNotFoundError(issue_id)
        return issue

    async def _apply_status(
        self,
        session: AsyncSession,
        issue: GovernanceIssue,
        new_status: IssueStatus,
        actor: str,
        ignored_reason: str | None,
        note: str | None,
        action_label: str | None = None,
    ) -> bool:
        """Apply one status transition. Returns False when the status is unchanged."""
        current = IssueStatus(issue.status)
        if new_status == current:
            return False
        if new_status == IssueStatus.IGNORED and not (ignored_reason or "").strip():
            raise IgnoredReasonRequiredError(issue.id)
        if new_status == IssueStatus.ASSIGNED and not issue.responsible_id:
            raise InvalidTransitionError(
                f"Issue {issue.id} has no responsible; use assign instead",
                current_status=current.value,
            )

        before = _snapshot(issue)
        now = utcnow()
        issue.status = new_status

        if new_status.is_terminal:
            issue.resolved_at = now
            issue.resolved_by = actor
            issue.ignored_reason = ignored_reason.strip() if new_status == IssueStatus.IGNORED else None
            issue.responsible_id = None
            issue.responsible_type = None
            await self._close_assignments(session, issue.id, AssignmentStatus.DONE)
        else:
            issue.resolved_at = None
            issue.resolved_by = None
            issue.ignored_reason = None
            if current.is_terminal:
                issue.sla_due_at = self.sla.calculate_reopened_due_at(issue.severity, now)
            if new_status == IssueStatus.IN_PROGRESS:
                await self._close_assignments(session, issue.id, AssignmentStatus.IN_PROGRESS)
        issue.updated_at = now

        after = _snapshot(issue)
        if current.is_terminal and not new_status.is_terminal:
            self._record(session, issue, HistoryAction.REOPENED, before, after, actor, note=note)
        if new_status == IssueStatus.IGNORED:
            self._record(session, issue, HistoryAction.IGNORED, before, after, actor, note=issue.ignored_reason)
        self._record(session, issue, HistoryAction.STATUS_CHANGED, before, after, actor, note=note)
        if action_label:
            self._record(session, issue, action_label, before, after, actor, note=note)

        logger.info(f"Issue {issue.id}: {current.value} -> {new_status.value} by {actor}")
        return True

    async def _close_assignments(
        self, session: AsyncSession, issue_id: int, status: AssignmentStatus
    ) -> None:
        """Move live assignment rows of an issue to the given status."""
        result = await session.execute(
            select(GovernanceIssueAssignment).where(
                GovernanceIssueAssignment.issue_id == issue_id,
                GovernanceIssueAssignment.status != AssignmentStatus.DONE,
            )
        )
        for assignment in result.scalars().all():
            assignment.status = status

    async def _create_ticket(self, issue: GovernanceIssue, responsible_id: str, note: str | None):
        if self.ticketing is None:
            raise GovernanceError("No ticketing client configured")
        issue_type = IssueType(issue.issue_type).value
        description = (
            f"Governance issue #{issue.id} ({issue_type}, {Severity(issue.severity).value}) "
            f"on article {issue.article_id}: {issue.message or ''}"
        )
        if note:
            description += f"\n\n{note}"
        request = TicketRequest(
            subject=f"[KB Governance] {issue_type} - article {issue.article_id}",
            description=description,
            owner_id=responsible_id,
            client_id=settings.SOURCE_TICKET_CLIENT_ID or None,
            service=settings.SOURCE_TICKET_SERVICE or None,
            owner_team=settings.SOURCE_TICKET_OWNER_TEAM or None,
            tags=["kb-governance", issue_type.lower()],
        )
        return await self.ticketing.create_ticket(request)

    def _record(
        self,
        session: AsyncSession,
        issue: GovernanceIssue,
        action: HistoryAction | str,
        old_value: dict[str, Any] | None,
        new_value: dict[str, Any] | None,
        actor: str,
        note: str | None = None,
    ) -> None:
        session.add(
            GovernanceIssueHistory(
                issue_id=issue.id,
                action=action.value if isinstance(action, HistoryAction) else str(action),
                old_value=old_value,
                new_value=new_value,
                note=note,
                actor=actor or SYSTEM_ACTOR,
                created_at=utcnow(),
            )
        )
