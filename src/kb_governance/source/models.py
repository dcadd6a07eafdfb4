"""Data models for source knowledge-base API responses."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from kb_governance.timeutils import parse_datetime


def _to_int(value: Any) -> int | None:
    """Parse an integer that the API may send as a number or a string."""
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


@dataclass
class Menu:
    """Source menu (category) an article lives under."""

    id: int | None
    name: str | None = None

    @classmethod
    def from_api(cls, data: dict | None) -> "Menu | None":
        if not data:
            return None
        return cls(id=_to_int(data.get("id")), name=data.get("name"))


@dataclass
class ArticleSummary:
    """Lightweight article record from the paginated search feed."""

    id: int
    title: str | None = None
    summary: str | None = None
    status: int | None = None
    # Raw values; the change detector decides whether they are usable
    revision_id: str | None = None
    updated_date: str | None = None
    menu: Menu | None = None

    @classmethod
    def from_api(cls, data: dict) -> "ArticleSummary":
        revision = data.get("revisionId")
        return cls(
            id=int(data["id"]),
            title=data.get("title"),
            summary=data.get("summary"),
            status=_to_int(data.get("status")),
            revision_id=str(revision) if revision is not None else None,
            updated_date=data.get("updatedDate"),
            menu=Menu.from_api(data.get("menu")),
        )

    @property
    def revision_number(self) -> int | None:
        return _to_int(self.revision_id)

    @property
    def updated_at(self) -> datetime | None:
        return parse_datetime(self.updated_date)


@dataclass
class ArticlePage:
    """One page of the search feed."""

    items: list[ArticleSummary] = field(default_factory=list)
    page: int = 0
    page_size: int = 0
    total_size: int | None = None

    @classmethod
    def from_api(cls, data: dict | None, page: int, page_size: int) -> "ArticlePage":
        data = data or {}
        return cls(
            items=[ArticleSummary.from_api(item) for item in data.get("items") or [] if item.get("id") is not None],
            page=page,
            page_size=_to_int(data.get("pageSize")) or page_size,
            total_size=_to_int(data.get("totalSize")),
        )


@dataclass
class ArticleRecord:
    """Full article as returned by the single-article endpoint."""

    id: int | None
    title: str | None = None
    slug: str | None = None
    summary: str | None = None
    article_status: int | None = None
    content_html: str | None = None
    content_text: str | None = None
    revision_id: int | None = None
    reading_time: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    menu: Menu | None = None

    @classmethod
    def from_api(cls, data: dict) -> "ArticleRecord":
        return cls(
            id=_to_int(data.get("id")),
            title=data.get("title"),
            slug=data.get("slug"),
            summary=data.get("summary"),
            article_status=_to_int(data.get("articleStatus")),
            content_html=data.get("contentHtml"),
            content_text=data.get("contentText"),
            revision_id=_to_int(data.get("revisionId")),
            reading_time=_to_int(data.get("readingTime")),
            created_at=parse_datetime(data.get("createdDate")),
            updated_at=parse_datetime(data.get("updatedDate")),
            menu=Menu.from_api(data.get("menu")),
        )


@dataclass
class TicketRequest:
    """Ticket opened in the help desk when an issue is assigned."""

    subject: str
    description: str
    owner_id: str
    client_id: str | None = None
    service: str | None = None
    owner_team: str | None = None
    urgency: str = "Normal"
    tags: list[str] = field(default_factory=lambda: ["kb-governance"])

    def to_api(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": 1,
            "subject": self.subject,
            "urgency": self.urgency,
            "justification": self.description,
            "origin": "Manual",
            "owner": {"id": self.owner_id},
            "createdBy": {"id": self.owner_id},
            "actions": [
                {
                    "type": 1,
                    "description": self.description,
                    "createdBy": {"id": self.owner_id},
                }
            ],
            "tags": list(self.tags),
        }
        if self.client_id:
            payload["clients"] = [{"id": self.client_id}]
        if self.service:
            payload["serviceFirstLevel"] = self.service
        if self.owner_team:
            payload["ownerTeam"] = self.owner_team
        return payload


@dataclass
class Ticket:
    """Ticket created in the help desk."""

    id: str
    protocol: str | None = None

    @classmethod
    def from_api(cls, data: dict) -> "Ticket":
        protocol = data.get("protocol")
        return cls(id=str(data["id"]), protocol=str(protocol) if protocol is not None else None)
