"""Source knowledge-base API client module."""

from kb_governance.source.client import SourceClient
from kb_governance.source.exceptions import (
    ArticleNotFoundError,
    RateLimitError,
    SourceError,
    SourceUnavailableError,
)
from kb_governance.source.models import (
    ArticlePage,
    ArticleRecord,
    ArticleSummary,
    Menu,
    Ticket,
    TicketRequest,
)

__all__ = [
    "ArticleNotFoundError",
    "ArticlePage",
    "ArticleRecord",
    "ArticleSummary",
    "Menu",
    "RateLimitError",
    "SourceClient",
    "SourceError",
    "SourceUnavailableError",
    "Ticket",
    "TicketRequest",
]
