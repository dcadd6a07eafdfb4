"""Article synchronization: mirror, change detection, orchestration, scheduling."""

from kb_governance.sync.change_detector import has_changed
from kb_governance.sync.classification import Classification, MenuClassifier
from kb_governance.sync.mirror import ArticleMirror, OutcomeKind, SyncOutcome
from kb_governance.sync.orchestrator import RunCounters, SyncOrchestrator
from kb_governance.sync.scheduler import SyncScheduler, effective_interval, is_working_hours
from kb_governance.sync.sync_issues import SyncIssueRecorder

__all__ = [
    "ArticleMirror",
    "Classification",
    "MenuClassifier",
    "OutcomeKind",
    "RunCounters",
    "SyncIssueRecorder",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncScheduler",
    "effective_interval",
    "has_changed",
    "is_working_hours",
]
