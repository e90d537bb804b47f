"""Data models for RSS Digest Bot."""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from dateutil import parser as date_parser

DEFAULT_CATEGORY = "Other"

DEFAULT_CATEGORIES = [
    "Top Stories",
    "Economy",
    "Society",
    "Technology & Science",
    "Travel",
    DEFAULT_CATEGORY,
]


def _format_ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = date_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class Article:
    """A single article as collected from a feed."""

    id: str
    source: str
    title: str
    url: str
    published_at: datetime
    language: str = ""
    content: str = ""
    metadata: dict[str, str] = field(default_factory=dict, hash=False)


@dataclass
class CategorizedArticle:
    """An article with the category assigned by the categorizer."""

    article: Article
    category: str
    relevance_score: float = 0.0  # 0-10, set by the ranker


@dataclass
class DigestEntry:
    """Final, user-facing form of an article."""

    id: str
    category: str
    title: str
    url: str
    summary: str
    source: str
    published_at: datetime


@dataclass(frozen=True)
class SentArticle:
    """A row of the sent-article ledger."""

    id: str
    sent_at: datetime


@dataclass(frozen=True)
class Recipient:
    """A chat that receives the digest."""

    name: str
    chat_id: str
    updated_at: datetime


@dataclass
class State:
    """Persisted cross-run state."""

    last_run: datetime | None = None
    sent_articles: list[SentArticle] = field(default_factory=list)
    recipients: list[Recipient] = field(default_factory=list)
    external_cursor: int = 0  # Telegram last_update_id

    def sent_ids(self) -> set[str]:
        return {item.id for item in self.sent_articles}

    def copy(self) -> "State":
        return replace(
            self,
            sent_articles=list(self.sent_articles),
            recipients=list(self.recipients),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_run": _format_ts(self.last_run),
            "sent_articles": [
                {"id": item.id, "sent_at": _format_ts(item.sent_at)}
                for item in self.sent_articles
            ],
            "recipients": [
                {
                    "name": r.name,
                    "chat_id": r.chat_id,
                    "updated_at": _format_ts(r.updated_at),
                }
                for r in self.recipients
            ],
            "telegram": {"last_update_id": self.external_cursor},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "State":
        """Build a State from its JSON form.

        Raises:
            ValueError, TypeError, KeyError: If the document has the wrong shape
        """
        if not isinstance(data, dict):
            raise TypeError("state document must be a JSON object")

        sent = [
            SentArticle(id=str(item["id"]), sent_at=_parse_ts(item.get("sent_at")))
            for item in data.get("sent_articles") or []
        ]
        recipients = [
            Recipient(
                name=str(item.get("name", "")),
                chat_id=str(item["chat_id"]),
                updated_at=_parse_ts(item.get("updated_at")),
            )
            for item in data.get("recipients") or []
        ]
        telegram = data.get("telegram") or {}
        return cls(
            last_run=_parse_ts(data.get("last_run")),
            sent_articles=sent,
            recipients=recipients,
            external_cursor=int(telegram.get("last_update_id", 0)),
        )


@dataclass
class Digest:
    """A built digest waiting for the send phase."""

    messages: list[str]
    created_at: datetime
    article_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": list(self.messages),
            "created_at": _format_ts(self.created_at),
            "article_ids": list(self.article_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Digest":
        if not isinstance(data, dict):
            raise TypeError("digest document must be a JSON object")
        messages = data.get("messages") or []
        if not all(isinstance(m, str) for m in messages):
            raise TypeError("digest messages must be strings")
        return cls(
            messages=list(messages),
            created_at=_parse_ts(data.get("created_at")),
            article_ids=[str(i) for i in data.get("article_ids") or []],
        )
