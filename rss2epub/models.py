"""
Core data models for the article cache and send ledger.

Field aliases match the persisted JSON layout of `.rss2epub.json`, so a
snapshot is dumped with ``by_alias=True`` and read back with the same models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SendStatus(str, Enum):
    """Outcome of one delivery attempt."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class FeedItem(BaseModel):
    """Notable fields of an RSS/Atom entry, as seen when it was discovered."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    title: str = Field(default="Untitled", description="Entry title")
    id: str | None = Field(default=None, description="Source guid")
    link: str | None = Field(default=None, description="Article URL")
    published_at: datetime | None = Field(
        default=None, alias="pubDate", description="Publication timestamp"
    )
    description: str | None = Field(default=None, description="Feed-provided summary")

    @field_validator("published_at", mode="after")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        """Naive timestamps are treated as UTC so dates stay comparable."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class ExtractedMeta(BaseModel):
    """Readability metadata produced once, when the article was first fetched."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    title: str = ""
    byline: str | None = None
    length: int = 0
    excerpt: str = ""
    site_name: str | None = Field(default=None, alias="siteName")


class ArticleRecord(BaseModel):
    """A cached article. The HTML body lives beside the cache as ``<id>.html``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., exclude=True, description="Article id (URL hash)")
    deleted: bool = Field(default=False, description="Gone from the feed since discovery")
    feed_item: FeedItem = Field(..., alias="feedItem")
    extracted_meta: ExtractedMeta | None = Field(default=None, alias="readabilityMeta")

    @property
    def published_at(self) -> datetime | None:
        return self.feed_item.published_at

    @property
    def title(self) -> str:
        if self.extracted_meta and self.extracted_meta.title:
            return self.extracted_meta.title
        return self.feed_item.title


class SendLogEntry(BaseModel):
    """One attempt to mail a set of articles to a recipient."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sent_at: datetime = Field(..., alias="sentAt")
    recipient: str = Field(..., alias="sentTo")
    article_ids: tuple[str, ...] = Field(..., alias="articlesSent")
    status: SendStatus


class StateSnapshot(BaseModel):
    """The unit of persistence: every cached article plus the send ledger."""

    emails: list[SendLogEntry] = Field(default_factory=list)
    articles: dict[str, ArticleRecord] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def inject_article_ids(cls, data: Any) -> Any:
        """Article ids are the mapping keys on disk; copy them into each record."""
        if isinstance(data, dict) and isinstance(data.get("articles"), dict):
            articles = {
                key: {**value, "id": key} if isinstance(value, dict) else value
                for key, value in data["articles"].items()
            }
            data = {**data, "articles": articles}
        return data


class ExtractedArticle(BaseModel):
    """Readable article returned by the extractor."""

    url: str
    title: str = ""
    byline: str | None = None
    length: int = 0
    excerpt: str = ""
    site_name: str | None = None
    content: str = ""

    @property
    def meta(self) -> ExtractedMeta:
        return ExtractedMeta(
            title=self.title,
            byline=self.byline,
            length=self.length,
            excerpt=self.excerpt,
            site_name=self.site_name,
        )
