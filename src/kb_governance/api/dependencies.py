"""Process-wide service instances shared by the API and the scheduler."""

import logging

from kb_governance.config import settings
from kb_governance.governance.duplicates import DuplicateDetector, DuplicateGroupService
from kb_governance.governance.issues import IssueLifecycleManager
from kb_governance.source.client import SourceClient
from kb_governance.sync.mirror import ArticleMirror
from kb_governance.sync.orchestrator import SyncOrchestrator
from kb_governance.sync.scheduler import SyncScheduler
from kb_governance.sync.sync_issues import SyncIssueRecorder

logger = logging.getLogger(__name__)

_source: SourceClient | None = None
_lifecycle: IssueLifecycleManager | None = None
_orchestrator: SyncOrchestrator | None = None
_scheduler: SyncScheduler | None = None


def get_source_client() -> SourceClient:
    global _source
    if _source is None:
        _source = SourceClient()
    return _source


def get_lifecycle() -> IssueLifecycleManager:
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = IssueLifecycleManager(ticketing=get_source_client())
    return _lifecycle


def get_orchestrator() -> SyncOrchestrator:
    """The single orchestrator of this process; it owns the run-lock."""
    global _orchestrator
    if _orchestrator is None:
        mirror = ArticleMirror(source=get_source_client(), lifecycle=get_lifecycle())
        _orchestrator = SyncOrchestrator(mirror=mirror)
        logger.debug(f"Sync orchestrator created for {settings.SOURCE_SYSTEM}")
    return _orchestrator


def get_scheduler() -> SyncScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = SyncScheduler(get_orchestrator())
    return _scheduler


def get_duplicate_detector() -> DuplicateDetector:
    return get_orchestrator().duplicates


def get_duplicate_service() -> DuplicateGroupService:
    lifecycle = get_lifecycle()
    return DuplicateGroupService(lifecycle=lifecycle, session_maker=lifecycle.session_maker)


def get_sync_issue_recorder() -> SyncIssueRecorder:
    return get_orchestrator().mirror.sync_issues


def reset_dependencies() -> None:
    """Drop cached instances (used by tests)."""
    global _source, _lifecycle, _orchestrator, _scheduler
    _source = None
    _lifecycle = None
    _orchestrator = None
    _scheduler = None
