"""Domain exceptions for sync orchestration and governance workflows."""


class GovernanceError(Exception):
    """Base exception for governance issue operations."""

    pass


class IssueNotFoundError(GovernanceError):
    """Governance issue does not exist."""

    def __init__(self, issue_id: int):
        self.issue_id = issue_id
        super().__init__(f"Governance issue not found: {issue_id}")


class IgnoredReasonRequiredError(GovernanceError):
    """An issue was moved to IGNORED without a reason."""

    def __init__(self, issue_id: int | None = None):
        self.issue_id = issue_id
        super().__init__("ignored_reason is required when status is IGNORED")


class InvalidTransitionError(GovernanceError):
    """Requested status change is not allowed from the current state."""

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class DuplicateGroupError(GovernanceError):
    """Request does not fit the duplicate group (e.g. primary is not a member)."""

    pass


class DuplicateGroupNotFoundError(DuplicateGroupError):
    """No duplicate issues carry this content hash."""

    def __init__(self, content_hash: str):
        self.content_hash = content_hash
        super().__init__(f"Duplicate group not found: {content_hash}")


class SyncError(Exception):
    """Base exception for sync runs."""

    pass


class SyncAlreadyRunningError(SyncError):
    """A sync run is already in progress."""

    def __init__(self):
        super().__init__("Sync already running")


class SyncCancelledError(SyncError):
    """The running sync was asked to stop."""

    def __init__(self):
        super().__init__("cancelled")


class InvalidSyncModeError(SyncError, ValueError):
    """Unknown sync mode name."""

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Unknown sync mode: {value}")
