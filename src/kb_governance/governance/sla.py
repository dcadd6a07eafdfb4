"""Severity-based SLA deadlines for governance issues."""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from kb_governance.config import settings
from kb_governance.db.models import IssueStatus, Severity
from kb_governance.timeutils import business_tz, ensure_utc, utcnow

# Used when a severity has no configured window
DEFAULT_SLA_DAYS = 15


class GovernanceSlaService:
    """Compute and evaluate SLA due dates.

    Deadlines are calculated in the business timezone (calendar days there) and
    returned as aware UTC datetimes.
    """

    def __init__(
        self,
        sla_days: dict[str, int] | None = None,
        timezone_name: str | None = None,
    ):
        self.sla_days = dict(sla_days or settings.sla_days)
        self.tz: ZoneInfo = business_tz(timezone_name)

    def days_for(self, severity: Severity | str | None) -> int:
        if severity is None:
            return DEFAULT_SLA_DAYS
        key = severity.value if isinstance(severity, Severity) else str(severity).upper()
        return self.sla_days.get(key, DEFAULT_SLA_DAYS)

    def calculate_due_at(self, base: datetime, severity: Severity | str | None) -> datetime:
        """Due date = base + days for severity, counted in the business timezone."""
        local = ensure_utc(base).astimezone(self.tz)
        # Wall-clock arithmetic keeps the local time across DST changes
        due_local = (local.replace(tzinfo=None) + timedelta(days=self.days_for(severity))).replace(
            tzinfo=self.tz
        )
        return ensure_utc(due_local)

    def calculate_reopened_due_at(
        self, severity: Severity | str | None, now: datetime | None = None
    ) -> datetime:
        """A reopened issue gets a fresh window starting now."""
        return self.calculate_due_at(now or utcnow(), severity)

    def is_overdue(
        self,
        now: datetime,
        due_at: datetime | None,
        status: IssueStatus | str | None,
    ) -> bool:
        """True when due_at has passed and the issue is still live."""
        if due_at is None:
            return False
        if status is not None and IssueStatus(status).is_terminal:
            return False
        return ensure_utc(due_at) < ensure_utc(now)

    def is_due_soon(
        self,
        now: datetime,
        due_at: datetime | None,
        status: IssueStatus | str | None,
        within_days: int | None = None,
    ) -> bool:
        """True for live issues whose deadline falls inside the warning window."""
        if due_at is None or (status is not None and IssueStatus(status).is_terminal):
            return False
        window = timedelta(days=within_days if within_days is not None else settings.SLA_DUE_SOON_DAYS)
        now_utc = ensure_utc(now)
        return now_utc <= ensure_utc(due_at) <= now_utc + window
