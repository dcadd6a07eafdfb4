"""Decide whether a summary record warrants a full re-fetch."""

from kb_governance.db.models import Article
from kb_governance.source.models import ArticleSummary


def has_changed(existing: Article, incoming: ArticleSummary) -> bool:
    """Compare a stored article with an incoming summary.

    A numeric revision is the stronger signal and wins when present. Otherwise a
    strictly later update timestamp counts as a change. With neither signal the
    article is reported unchanged.
    """
    incoming_revision = incoming.revision_number
    if incoming_revision is not None:
        return existing.revision_id is None or existing.revision_id != incoming_revision

    incoming_updated = incoming.updated_at
    if incoming_updated is not None:
        return existing.source_updated_at is None or incoming_updated > existing.source_updated_at

    return False
