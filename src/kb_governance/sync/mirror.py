"""Local mirror of source articles: fetch, classify, persist, record outcome."""

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kb_governance.config import settings
from kb_governance.db.database import async_session_maker
from kb_governance.db.models import (
    Article,
    IssueType,
    Severity,
    SyncIssueType,
    SyncState,
    SyncStatus,
)
from kb_governance.governance.fingerprint import (
    article_fingerprint,
    is_effectively_empty,
)
from kb_governance.governance.issues import IssueLifecycleManager, commit_with_retry
from kb_governance.source.client import SourceClient
from kb_governance.source.exceptions import ArticleNotFoundError
from kb_governance.source.models import ArticleRecord, ArticleSummary
from kb_governance.sync.classification import MenuClassifier
from kb_governance.sync.sync_issues import SyncIssueRecorder
from kb_governance.timeutils import utcnow

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_LENGTH = 400


class OutcomeKind(str, Enum):
    """What happened to one article during a sync."""

    CREATED = "CREATED"
    UPDATED = "UPDATED"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"


@dataclass
class SyncOutcome:
    """Result of ``ArticleMirror.sync``; failures are values, not exceptions."""

    article_id: int
    kind: OutcomeKind
    article: Article | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.CREATED, OutcomeKind.UPDATED)


def build_source_url(article_id: int, slug: str | None) -> str:
    return settings.SOURCE_ARTICLE_URL.format(id=article_id, slug=slug or "")


class ArticleMirror:
    """Owns the local copy of each source article."""

    def __init__(
        self,
        source: SourceClient | None = None,
        lifecycle: IssueLifecycleManager | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        classifier: MenuClassifier | None = None,
        sync_issues: SyncIssueRecorder | None = None,
    ):
        self.session_maker = session_maker or async_session_maker
        self.source = source or SourceClient()
        self.lifecycle = lifecycle or IssueLifecycleManager(session_maker=self.session_maker)
        self.classifier = classifier or MenuClassifier()
        self.sync_issues = sync_issues or SyncIssueRecorder(session_maker=self.session_maker)

    async def sync(
        self,
        article_id: int,
        summary: ArticleSummary | None = None,
        sync_state: SyncState = SyncState.SYNCED,
    ) -> SyncOutcome:
        """Fetch one article and update the mirror.

        Not-found and any other per-article failure are recorded on the local
        copy and as sync issues, then returned as the outcome.

        Args:
            article_id: Source article id
            summary: Summary record from the search feed, used as a menu fallback
            sync_state: State stamped on success (the surgical delta uses NEW/UPDATED)
        """
        try:
            record = await self.source.fetch_article(article_id)
        except ArticleNotFoundError as e:
            logger.info(f"Article {article_id} not found at source")
            await self.mark_failed(article_id, SyncStatus.NOT_FOUND, SyncIssueType.NOT_FOUND, str(e))
            return SyncOutcome(article_id, OutcomeKind.NOT_FOUND, error=str(e))
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            logger.warning(f"Failed to fetch article {article_id}: {message}")
            await self.mark_failed(article_id, SyncStatus.ERROR, SyncIssueType.ERROR, message)
            return SyncOutcome(article_id, OutcomeKind.ERROR, error=message)

        if record.id is None:
            message = "Source returned an article without id"
            await self.mark_failed(article_id, SyncStatus.ERROR, SyncIssueType.ERROR, message)
            return SyncOutcome(article_id, OutcomeKind.ERROR, error=message)

        try:
            return await self._persist(article_id, record, summary, sync_state)
        except SQLAlchemyError as e:
            message = f"{type(e).__name__}: {e}"
            logger.error(f"Failed to persist article {article_id}: {message}")
            await self.mark_failed(article_id, SyncStatus.ERROR, SyncIssueType.ERROR, message)
            return SyncOutcome(article_id, OutcomeKind.ERROR, error=message)

    async def _persist(
        self,
        article_id: int,
        record: ArticleRecord,
        summary: ArticleSummary | None,
        sync_state: SyncState,
    ) -> SyncOutcome:
        """Merge the fetched record and open issues, all in one transaction."""
        outcome = await commit_with_retry(
            self.session_maker,
            lambda session: self._persist_in_session(session, article_id, record, summary, sync_state),
        )
        logger.debug(f"Article {article_id} synced ({outcome.kind.value})")
        return outcome

    async def _persist_in_session(
        self,
        session: AsyncSession,
        article_id: int,
        record: ArticleRecord,
        summary: ArticleSummary | None,
        sync_state: SyncState,
    ) -> SyncOutcome:
        now = utcnow()
        article = await session.get(Article, article_id)
        created = article is None
        if created:
            article = Article(id=article_id)
            session.add(article)

        self._merge(article, record, summary)

        observed: set[SyncIssueType] = set()
        menu = record.menu or (summary.menu if summary else None)
        classification = await self.classifier.classify(session, menu)
        article.system_id = classification.system_id
        article.source_menu_id = menu.id if menu else None
        article.source_menu_name = menu.name if menu else None
        if classification.is_fallback:
            observed.add(classification.issue_type)
            await self.sync_issues.record(
                session, article_id, classification.issue_type, classification.message
            )

        article.content_hash = article_fingerprint(article.content_text, article.content_html)
        if is_effectively_empty(article.content_text, article.content_html):
            observed.add(SyncIssueType.EMPTY_CONTENT)
            await self.sync_issues.record(
                session, article_id, SyncIssueType.EMPTY_CONTENT, "Article content is empty"
            )
            await self.lifecycle.open_in_session(
                session,
                article_id,
                IssueType.INCOMPLETE_CONTENT,
                Severity.ERROR,
                "Article has no content",
                {"clean_length": 0},
            )

        article.sync_status = SyncStatus.OK
        article.sync_state = sync_state
        article.sync_error_message = None
        article.fetched_at = now
        article.last_seen_at = now
        await self.sync_issues.resolve_others(session, article_id, keep=observed)
        await session.flush()

        # Every successful sync re-asserts the pending review unless it was closed
        await self.lifecycle.open_in_session(
            session,
            article_id,
            IssueType.REVIEW_REQUIRED,
            Severity.INFO,
            "Review pending for this article",
            reopen_closed=False,
        )

        kind = OutcomeKind.CREATED if created else OutcomeKind.UPDATED
        return SyncOutcome(article_id, kind, article=article)

    @staticmethod
    def _merge(article: Article, record: ArticleRecord, summary: ArticleSummary | None) -> None:
        article.title = record.title or (summary.title if summary else None) or article.title
        article.slug = record.slug
        article.summary = record.summary if record.summary is not None else (summary.summary if summary else None)
        article.article_status = record.article_status
        article.content_html = record.content_html
        article.content_text = record.content_text
        article.revision_id = record.revision_id
        article.reading_time = record.reading_time
        article.source_created_at = record.created_at
        article.source_updated_at = record.updated_at
        article.source_url = build_source_url(article.id, record.slug)

    async def mark_failed(
        self,
        article_id: int,
        status: SyncStatus,
        issue_type: SyncIssueType,
        message: str,
    ) -> None:
        """Stamp the failure on the local copy (if any) and record the sync issue."""
        async with self.session_maker() as session:
            article = await session.get(Article, article_id)
            if article is not None:
                article.sync_status = status
                article.sync_error_message = message[:ERROR_MESSAGE_MAX_LENGTH]
                if status == SyncStatus.NOT_FOUND:
                    article.sync_state = SyncState.MISSING
            await self.sync_issues.record(session, article_id, issue_type, message)
            await session.commit()
