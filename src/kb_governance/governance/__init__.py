"""Governance module for content quality issues."""

from kb_governance.governance.detectors import (
    AiReadyDetector,
    GovernanceDetectorService,
    IncompleteContentDetector,
    InconsistentStructureDetector,
    OutdatedContentDetector,
    ReviewRequiredDetector,
)
from kb_governance.governance.duplicates import (
    DuplicateDetector,
    DuplicateGroup,
    DuplicateGroupService,
)
from kb_governance.governance.issues import (
    BulkUpdateResult,
    IssueFilters,
    IssueLifecycleManager,
)
from kb_governance.governance.sla import GovernanceSlaService

__all__ = [
    "AiReadyDetector",
    "BulkUpdateResult",
    "DuplicateDetector",
    "DuplicateGroup",
    "DuplicateGroupService",
    "GovernanceDetectorService",
    "GovernanceSlaService",
    "IncompleteContentDetector",
    "InconsistentStructureDetector",
    "IssueFilters",
    "IssueLifecycleManager",
    "OutdatedContentDetector",
    "ReviewRequiredDetector",
]
