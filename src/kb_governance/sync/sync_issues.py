"""Technical sync issues (not found, empty content, menu problems, errors)."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kb_governance.db.database import async_session_maker
from kb_governance.db.models import SyncIssue, SyncIssueType
from kb_governance.timeutils import utcnow

logger = logging.getLogger(__name__)

MESSAGE_MAX_LENGTH = 400


class SyncIssueRecorder:
    """Keeps at most one unresolved sync issue per (article, type)."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self.session_maker = session_maker or async_session_maker

    async def record(
        self,
        session: AsyncSession,
        article_id: int,
        issue_type: SyncIssueType,
        message: str | None,
    ) -> SyncIssue:
        """Open a sync issue or refresh the message of the unresolved one."""
        message = message[:MESSAGE_MAX_LENGTH] if message else message
        now = utcnow()
        result = await session.execute(
            select(SyncIssue)
            .where(
                SyncIssue.article_id == article_id,
                SyncIssue.issue_type == SyncIssueType(issue_type),
                SyncIssue.resolved.is_(False),
            )
            .order_by(SyncIssue.id.desc())
            .limit(1)
        )
        issue = result.scalar_one_or_none()
        if issue is None:
            issue = SyncIssue(
                article_id=article_id,
                issue_type=SyncIssueType(issue_type),
                message=message,
                resolved=False,
                created_at=now,
                updated_at=now,
            )
            session.add(issue)
            logger.info(f"Sync issue {SyncIssueType(issue_type).value} for article {article_id}: {message}")
        else:
            issue.message = message
            issue.updated_at = now
        return issue

    async def resolve_others(
        self,
        session: AsyncSession,
        article_id: int,
        keep: set[SyncIssueType],
    ) -> int:
        """Resolve unresolved issues of the article whose type was not observed again."""
        result = await session.execute(
            select(SyncIssue).where(
                SyncIssue.article_id == article_id,
                SyncIssue.resolved.is_(False),
            )
        )
        resolved = 0
        now = utcnow()
        for issue in result.scalars().all():
            if SyncIssueType(issue.issue_type) in keep:
                continue
            issue.resolved = True
            issue.resolved_at = now
            issue.updated_at = now
            resolved += 1
        return resolved

    async def list_open(
        self,
        article_id: int | None = None,
        issue_type: SyncIssueType | None = None,
        limit: int = 100,
    ) -> list[SyncIssue]:
        query = select(SyncIssue).where(SyncIssue.resolved.is_(False))
        if article_id is not None:
            query = query.where(SyncIssue.article_id == article_id)
        if issue_type is not None:
            query = query.where(SyncIssue.issue_type == SyncIssueType(issue_type))
        query = query.order_by(SyncIssue.updated_at.desc(), SyncIssue.id.desc()).limit(limit)
        async with self.session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
