"""Timezone helpers shared by sync and governance code."""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from kb_governance.config import settings


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def business_tz(name: str | None = None) -> ZoneInfo:
    """Business timezone used for SLA and working-hours calculations."""
    return ZoneInfo(name or settings.BUSINESS_TIMEZONE)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp from the source API.

    Values without an offset are treated as UTC. Unparseable values return None.
    """
    if not value or not str(value).strip():
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)
