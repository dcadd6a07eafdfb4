"""Per-article governance detectors and the service that runs them."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kb_governance.config import settings
from kb_governance.db.database import async_session_maker
from kb_governance.db.models import (
    Article,
    IssueType,
    KbSystem,
    Severity,
    SyncState,
)
from kb_governance.governance.fingerprint import (
    has_placeholder,
    html_to_text,
    normalize,
)
from kb_governance.governance.issues import SYSTEM_ACTOR, IssueLifecycleManager, commit_with_retry
from kb_governance.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Finding:
    """A problem a detector observed on one article."""

    severity: Severity
    message: str
    evidence: dict[str, Any] | None = None


@dataclass
class DetectionContext:
    """Shared lookups for one detector pass."""

    now: datetime
    system_codes: dict[int, str] = field(default_factory=dict)
    default_system_code: str = "GENERAL"


def article_text(article: Article, separator: str = " ") -> str:
    """Plain text of an article, falling back to its HTML when the text variant is blank."""
    if article.content_text and article.content_text.strip():
        return article.content_text
    return html_to_text(article.content_html, separator=separator)


class ArticleDetector:
    """Base class for detectors that look at one article at a time."""

    issue_type: IssueType
    # False: a closed issue stays closed even if the condition still holds
    reopen_closed: bool = True
    # True: a live issue is resolved once the condition disappears
    resolve_when_clear: bool = False

    def evaluate(self, article: Article, context: DetectionContext) -> Finding | None:
        raise NotImplementedError


class IncompleteContentDetector(ArticleDetector):
    """Empty, very short, or stub articles."""

    issue_type = IssueType.INCOMPLETE_CONTENT

    def __init__(self, min_chars: int | None = None):
        self.min_chars = min_chars or settings.INCOMPLETE_MIN_CHARS

    def evaluate(self, article: Article, context: DetectionContext) -> Finding | None:
        normalized = normalize(article_text(article))
        length = len(normalized)
        placeholder = has_placeholder(normalized)
        evidence = {"clean_length": length, "min_chars": self.min_chars, "placeholder": placeholder}

        if length == 0:
            return Finding(Severity.ERROR, "Article has no content", evidence)
        if length < self.min_chars:
            return Finding(
                Severity.WARN,
                f"Content too short ({length} chars, minimum {self.min_chars})",
                evidence,
            )
        if placeholder:
            return Finding(Severity.INFO, "Content contains placeholder text", evidence)
        return None


class InconsistentStructureDetector(ArticleDetector):
    """Articles without a specific system classification."""

    issue_type = IssueType.INCONSISTENT_CONTENT

    def evaluate(self, article: Article, context: DetectionContext) -> Finding | None:
        if article.system_id is None:
            return Finding(
                Severity.ERROR,
                "Article is not classified under any system",
                {"reason": "NO_SYSTEM", "source_menu_id": article.source_menu_id},
            )
        code = context.system_codes.get(article.system_id)
        if code is not None and code.upper() == context.default_system_code.upper():
            return Finding(
                Severity.WARN,
                "Article is classified under the generic system",
                {
                    "reason": "GENERIC_SYSTEM",
                    "system_code": code,
                    "source_menu_id": article.source_menu_id,
                    "source_menu_name": article.source_menu_name,
                },
            )
        return None


class OutdatedContentDetector(ArticleDetector):
    """Articles not updated at the source for too long."""

    issue_type = IssueType.OUTDATED_CONTENT

    def __init__(self, max_days: int | None = None):
        self.max_days = max_days or settings.OUTDATED_MAX_DAYS

    def evaluate(self, article: Article, context: DetectionContext) -> Finding | None:
        reference = article.source_updated_at or article.source_created_at
        if reference is None:
            return None
        age_days = (context.now - reference).days
        if age_days <= self.max_days:
            return None

        if age_days > self.max_days * 2:
            severity = Severity.ERROR
        elif age_days > self.max_days * 1.5:
            severity = Severity.WARN
        else:
            severity = Severity.INFO
        return Finding(
            severity,
            f"Not updated in {age_days} days",
            {"age_days": age_days, "max_days": self.max_days, "reference": reference.isoformat()},
        )


class ReviewRequiredDetector(ArticleDetector):
    """Standing reminder that a human review is pending."""

    issue_type = IssueType.REVIEW_REQUIRED
    reopen_closed = False

    def evaluate(self, article: Article, context: DetectionContext) -> Finding | None:
        return Finding(Severity.INFO, "Review pending for this article")


# (label, accepted headings, minimum list items under the heading)
AI_READY_CHECKLIST: tuple[tuple[str, tuple[str, ...], int], ...] = (
    ("objective", ("objetivo", "objective"), 0),
    ("when to use", ("quando utilizar", "quando usar", "when to use"), 0),
    ("how to access", ("como acessar", "acesso", "how to access"), 0),
    ("prerequisites", ("pré-requisitos", "prerequisitos", "requisitos", "prerequisites"), 0),
    ("business rules", ("regras de negócio", "regras do negocio", "regra de negócio", "business rules"), 1),
    ("fields", ("campos", "campo", "fields"), 0),
    ("step by step", ("passo a passo", "passos", "step by step", "steps"), 3),
    ("common errors", ("erros comuns", "problemas comuns", "common errors"), 0),
    ("faq", ("faq", "perguntas frequentes"), 1),
    ("ai intents", ("intenções ia", "intencoes ia", "intenções de ia", "intencoes de ia", "ai intents"), 3),
)

_SECTION_START = re.compile(r"(?m)^\s{0,3}(#+\s+|[A-ZÇÃÕÁÉÍÓÚ].{0,40}:)")
_LIST_ITEM = re.compile(r"(?m)^\s*(\d+\.|-\s+|•\s+).+")


class AiReadyDetector(ArticleDetector):
    """Checks the article against the structure expected by the support assistant."""

    issue_type = IssueType.NOT_AI_READY
    resolve_when_clear = True

    def evaluate(self, article: Article, context: DetectionContext) -> Finding | None:
        raw = f"{article.title or ''}\n{article_text(article, separator=chr(10))}"
        lower = raw.lower()
        if not normalize(raw):
            return None

        missing = []
        counts = {}
        for label, keys, min_items in AI_READY_CHECKLIST:
            if min_items:
                count = self._count_items(raw, lower, keys)
                counts[label] = count
                ok = count >= min_items
            else:
                ok = any(key in lower for key in keys)
            if not ok:
                missing.append(label)

        if not missing:
            return None
        score = 10 * (len(AI_READY_CHECKLIST) - len(missing))
        return Finding(
            Severity.WARN,
            f"AI-ready checklist incomplete: {', '.join(missing)}",
            {"score": score, "missing": missing, "item_counts": counts},
        )

    @staticmethod
    def _count_items(raw: str, lower: str, keys: tuple[str, ...]) -> int:
        index = next((lower.find(k) for k in keys if lower.find(k) >= 0), -1)
        if index < 0:
            return 0
        tail = raw[index:]
        starts = list(_SECTION_START.finditer(tail))
        # The first match is the heading itself; the section ends at the next one
        section = tail[: starts[1].start()] if len(starts) > 1 else tail
        return len(_LIST_ITEM.findall(section))


def default_detectors() -> list[ArticleDetector]:
    return [
        IncompleteContentDetector(),
        InconsistentStructureDetector(),
        OutdatedContentDetector(),
        ReviewRequiredDetector(),
        AiReadyDetector(),
    ]


class GovernanceDetectorService:
    """Run per-article detectors and record their findings as issues."""

    def __init__(
        self,
        lifecycle: IssueLifecycleManager | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        detectors: list[ArticleDetector] | None = None,
    ):
        self.session_maker = session_maker or async_session_maker
        self.lifecycle = lifecycle or IssueLifecycleManager(session_maker=self.session_maker)
        self.detectors = detectors if detectors is not None else default_detectors()

    async def build_context(self, session: AsyncSession) -> DetectionContext:
        result = await session.execute(select(KbSystem.id, KbSystem.code))
        return DetectionContext(
            now=utcnow(),
            system_codes={row[0]: row[1] for row in result.all()},
            default_system_code=settings.DEFAULT_SYSTEM_CODE,
        )

    async def analyze_article_in_session(
        self,
        session: AsyncSession,
        article: Article,
        context: DetectionContext,
    ) -> int:
        """Evaluate every detector on one article. Returns the number of findings."""
        findings = 0
        for detector in self.detectors:
            finding = detector.evaluate(article, context)
            if finding is None:
                if detector.resolve_when_clear:
                    await self.lifecycle.resolve_if_live_in_session(
                        session, article.id, detector.issue_type, note="Condition no longer detected"
                    )
                continue

            await self.lifecycle.open_in_session(
                session,
                article.id,
                detector.issue_type,
                finding.severity,
                finding.message,
                finding.evidence,
                actor=SYSTEM_ACTOR,
                reopen_closed=detector.reopen_closed,
            )
            findings += 1
        return findings

    async def analyze_article(self, article_id: int) -> int:
        async def work(session: AsyncSession) -> int:
            article = await session.get(Article, article_id)
            if article is None:
                return 0
            context = await self.build_context(session)
            return await self.analyze_article_in_session(session, article, context)

        return await commit_with_retry(self.session_maker, work)

    async def analyze_recent(self, limit: int | None = None) -> int:
        """Analyze the most recently changed articles that are still present at the source."""
        limit = limit or settings.GOVERNANCE_RECENT_LIMIT
        async with self.session_maker() as session:
            result = await session.execute(
                select(Article.id)
                .where(Article.sync_state != SyncState.MISSING)
                .order_by(func.coalesce(Article.source_updated_at, Article.fetched_at).desc(), Article.id)
                .limit(limit)
            )
            article_ids = [row[0] for row in result.all()]

        total = 0
        for article_id in article_ids:
            # One transaction per article
            total += await self.analyze_article(article_id)
        logger.info(f"Governance detectors: {len(article_ids)} articles analyzed, {total} findings")
        return total
