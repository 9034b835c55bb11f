"""Choosing which articles go into the next EPUB, and in what order."""

from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Literal, Self, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from rss2epub.errors import ConfigError
from rss2epub.logging_config import get_logger
from rss2epub.storage.state import ArticleStore, SendLedger

logger = get_logger("selection")

T = TypeVar("T")


class SelectionOptions(BaseModel):
    """Filtering and ordering applied to a list of articles."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    before: datetime | None = Field(default=None, description="Only articles published before")
    after: datetime | None = Field(default=None, description="Only articles published after")
    order_by: Literal["date"] | None = Field(default=None)
    reverse: bool = False
    max: int | None = Field(default=None, ge=1, description="Keep at most this many")

    @field_validator("before", "after", mode="after")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def check_window(self) -> Self:
        if self.before and self.after and self.after >= self.before:
            raise ValueError("'after' must be earlier than 'before'")
        return self

    @property
    def uses_dates(self) -> bool:
        return self.before is not None or self.after is not None or self.order_by == "date"


def build_selection_options(**values) -> SelectionOptions:
    """Validate raw option values, raising ConfigError on bad input."""
    try:
        return SelectionOptions.model_validate(values)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'options'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"Invalid selection options: {details}") from exc


def apply_selection(
    items: Sequence[T],
    options: SelectionOptions,
    published: Callable[[T], datetime | None],
) -> list[T]:
    """
    Filter, sort, reverse and truncate `items`, in that order.

    Truncation happens last so that `reverse` + `max` picks from the far end
    of the sorted list.
    """
    selected = list(items)

    if options.uses_dates:
        logger.debug("time based option enabled, removing articles without a date")
        selected = [item for item in selected if published(item) is not None]

    if options.before is not None:
        selected = [item for item in selected if published(item) < options.before]

    if options.after is not None:
        selected = [item for item in selected if published(item) > options.after]

    if options.order_by == "date":
        selected.sort(key=published)

    if options.reverse:
        selected.reverse()

    if options.max is not None:
        selected = selected[: options.max]

    return selected


def select_unsent(
    store: ArticleStore,
    ledger: SendLedger,
    recipient: str | None,
    options: SelectionOptions | None = None,
) -> list[str]:
    """
    Ids of live articles not yet delivered to `recipient`, ordered per `options`.

    Read-only: neither the store nor the ledger is modified.
    """
    options = options or SelectionOptions()
    sent = ledger.sent_article_ids(recipient)
    unsent = [record for record in store.records() if record.id not in sent]
    selected = apply_selection(unsent, options, published=lambda record: record.published_at)
    logger.debug(f"{len(selected)} of {len(unsent)} unsent article(s) selected for {recipient}")
    return [record.id for record in selected]
