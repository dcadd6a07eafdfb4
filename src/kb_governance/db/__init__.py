"""Database module for the article mirror and governance tables."""

from kb_governance.db.database import async_session_maker, engine, init_db
from kb_governance.db.models import (
    Article,
    Base,
    GovernanceIssue,
    GovernanceIssueAssignment,
    GovernanceIssueHistory,
    KbSystem,
    MenuMapping,
    SyncConfig,
    SyncIssue,
    SyncRun,
)

__all__ = [
    "Article",
    "Base",
    "GovernanceIssue",
    "GovernanceIssueAssignment",
    "GovernanceIssueHistory",
    "KbSystem",
    "MenuMapping",
    "SyncConfig",
    "SyncIssue",
    "SyncRun",
    "async_session_maker",
    "engine",
    "init_db",
]
