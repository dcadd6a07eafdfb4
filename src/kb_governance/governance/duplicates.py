"""Duplicate content detection and duplicate-group workflows."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kb_governance.db.database import async_session_maker
from kb_governance.db.models import (
    Article,
    GovernanceIssue,
    IssueStatus,
    IssueType,
    Severity,
    SyncState,
)
from kb_governance.exceptions import DuplicateGroupError, DuplicateGroupNotFoundError
from kb_governance.governance.issues import (
    SYSTEM_ACTOR,
    BulkUpdateResult,
    IssueLifecycleManager,
    commit_with_retry,
)

logger = logging.getLogger(__name__)

PRIMARY_SET = "PRIMARY_SET"
GROUP_IGNORED = "GROUP_IGNORED"
MERGE_REQUESTED = "MERGE_REQUESTED"


@dataclass
class DuplicateMember:
    """One article in a duplicate group and its issue."""

    article_id: int
    issue_id: int
    status: IssueStatus
    title: str | None = None


@dataclass
class DuplicateGroup:
    """Articles sharing one content hash."""

    content_hash: str
    status: IssueStatus
    members: list[DuplicateMember] = field(default_factory=list)

    @property
    def article_ids(self) -> list[int]:
        return [m.article_id for m in self.members]

    @property
    def issue_ids(self) -> list[int]:
        return [m.issue_id for m in self.members]


def derive_group_status(statuses: list[IssueStatus]) -> IssueStatus:
    """Collapse member statuses into one group status."""
    if not statuses:
        return IssueStatus.OPEN
    if all(s == IssueStatus.RESOLVED for s in statuses):
        return IssueStatus.RESOLVED
    if all(s == IssueStatus.IGNORED for s in statuses):
        return IssueStatus.IGNORED
    if any(s == IssueStatus.IN_PROGRESS for s in statuses):
        return IssueStatus.IN_PROGRESS
    if any(s == IssueStatus.ASSIGNED for s in statuses):
        return IssueStatus.ASSIGNED
    return IssueStatus.OPEN


def _owners_query():
    """Articles that can surface to readers, i.e. not missing at the source."""
    return select(Article.id).where(
        Article.content_hash.is_not(None),
        Article.sync_state != SyncState.MISSING,
    )


class DuplicateDetector:
    """Raise DUPLICATE_CONTENT issues on every member of a content-hash collision.

    Groups that shrink are never resolved here; ``reconcile`` is the explicit
    pass for that.
    """

    def __init__(
        self,
        lifecycle: IssueLifecycleManager | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.session_maker = session_maker or async_session_maker
        self.lifecycle = lifecycle or IssueLifecycleManager(session_maker=self.session_maker)

    async def analyze_all(self) -> int:
        """Analyze every hash owned by more than one article.

        Returns:
            Number of issues opened or refreshed
        """
        async with self.session_maker() as session:
            result = await session.execute(
                select(Article.content_hash)
                .where(Article.content_hash.is_not(None), Article.sync_state != SyncState.MISSING)
                .group_by(Article.content_hash)
                .having(func.count(Article.id) > 1)
            )
            hashes = [row[0] for row in result.all()]

        total = 0
        for content_hash in hashes:
            total += await self.analyze_hash(content_hash)
        logger.info(f"Duplicate analysis: {len(hashes)} groups, {total} issues opened/refreshed")
        return total

    async def analyze_hash(self, content_hash: str | None) -> int:
        """Open or refresh the duplicate issue on every member of one hash group."""
        if not content_hash:
            return 0
        return await commit_with_retry(
            self.session_maker, lambda session: self._open_group(session, content_hash)
        )

    async def _open_group(self, session: AsyncSession, content_hash: str) -> int:
        result = await session.execute(
            _owners_query().where(Article.content_hash == content_hash).order_by(Article.id)
        )
        article_ids = [row[0] for row in result.all()]
        if len(article_ids) < 2:
            return 0

        evidence = {
            "hash": content_hash,
            "count": len(article_ids),
            "article_ids": article_ids,
        }
        message = f"Duplicate content shared by {len(article_ids)} articles: {article_ids}"
        for article_id in article_ids:
            await self.lifecycle.open_in_session(
                session,
                article_id,
                IssueType.DUPLICATE_CONTENT,
                Severity.WARN,
                message,
                evidence,
            )
        return len(article_ids)

    async def reconcile(self, actor: str = SYSTEM_ACTOR) -> int:
        """Resolve live duplicate issues whose article no longer collides.

        Returns:
            Number of issues resolved
        """
        async with self.session_maker() as session:
            result = await session.execute(
                select(GovernanceIssue).where(
                    GovernanceIssue.issue_type == IssueType.DUPLICATE_CONTENT,
                    GovernanceIssue.status.notin_([IssueStatus.RESOLVED, IssueStatus.IGNORED]),
                )
            )
            issues = list(result.scalars().all())
            counts_result = await session.execute(
                select(Article.content_hash, func.count(Article.id))
                .where(Article.content_hash.is_not(None), Article.sync_state != SyncState.MISSING)
                .group_by(Article.content_hash)
            )
            owners = {row[0]: row[1] for row in counts_result.all()}
            hashes_result = await session.execute(
                select(Article.id, Article.content_hash, Article.sync_state)
            )
            article_hash = {
                row[0]: (row[1] if row[2] != SyncState.MISSING else None)
                for row in hashes_result.all()
            }

        stale = []
        for issue in issues:
            group_hash = (issue.evidence or {}).get("hash")
            if article_hash.get(issue.article_id) != group_hash or owners.get(group_hash, 0) <= 1:
                stale.append(issue.id)

        if not stale:
            return 0
        outcome = await self.lifecycle.bulk_update_status(
            stale,
            IssueStatus.RESOLVED,
            actor,
            note="Duplicate group no longer exists",
        )
        return len(outcome.updated)


class DuplicateGroupService:
    """Operator workflows over duplicate groups."""

    def __init__(
        self,
        lifecycle: IssueLifecycleManager | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.session_maker = session_maker or async_session_maker
        self.lifecycle = lifecycle or IssueLifecycleManager(session_maker=self.session_maker)

    async def list_groups(self, include_closed: bool = False) -> list[DuplicateGroup]:
        """Duplicate groups built from DUPLICATE_CONTENT issue evidence."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(GovernanceIssue, Article.title)
                .outerjoin(Article, Article.id == GovernanceIssue.article_id)
                .where(GovernanceIssue.issue_type == IssueType.DUPLICATE_CONTENT)
                .order_by(GovernanceIssue.article_id)
            )
            rows = result.all()

        by_hash: dict[str, list[DuplicateMember]] = defaultdict(list)
        for issue, title in rows:
            group_hash = (issue.evidence or {}).get("hash")
            if not group_hash:
                continue
            by_hash[group_hash].append(
                DuplicateMember(
                    article_id=issue.article_id,
                    issue_id=issue.id,
                    status=IssueStatus(issue.status),
                    title=title,
                )
            )

        groups = []
        for group_hash, members in by_hash.items():
            status = derive_group_status([m.status for m in members])
            if not include_closed and status.is_terminal:
                continue
            groups.append(DuplicateGroup(content_hash=group_hash, status=status, members=members))
        groups.sort(key=lambda g: (-len(g.members), g.content_hash))
        return groups

    async def get_group(self, content_hash: str) -> DuplicateGroup:
        for group in await self.list_groups(include_closed=True):
            if group.content_hash == content_hash:
                return group
        raise DuplicateGroupNotFoundError(content_hash)

    async def set_primary(
        self, content_hash: str, primary_article_id: int, actor: str, note: str | None = None
    ) -> BulkUpdateResult:
        """Keep one article as the canonical copy and resolve the group."""
        group = await self.get_group(content_hash)
        if primary_article_id not in group.article_ids:
            raise DuplicateGroupError(
                f"Article {primary_article_id} is not part of duplicate group {content_hash}"
            )
        return await self.lifecycle.bulk_update_status(
            group.issue_ids,
            IssueStatus.RESOLVED,
            actor,
            action_label=PRIMARY_SET,
            note=note or f"Primary article: {primary_article_id}",
        )

    async def ignore_group(self, content_hash: str, actor: str, reason: str) -> BulkUpdateResult:
        group = await self.get_group(content_hash)
        return await self.lifecycle.bulk_update_status(
            group.issue_ids,
            IssueStatus.IGNORED,
            actor,
            action_label=GROUP_IGNORED,
            ignored_reason=reason,
            note=reason,
        )

    async def request_merge(
        self, content_hash: str, actor: str, note: str | None = None
    ) -> BulkUpdateResult:
        group = await self.get_group(content_hash)
        return await self.lifecycle.bulk_update_status(
            group.issue_ids,
            IssueStatus.IN_PROGRESS,
            actor,
            action_label=MERGE_REQUESTED,
            note=note or "Merge requested",
        )
