"""Tests for article selection."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from rss2epub.compile.selection import (
    SelectionOptions,
    apply_selection,
    build_selection_options,
    select_unsent,
)
from rss2epub.errors import ConfigError
from rss2epub.models import ArticleRecord, FeedItem, SendStatus
from rss2epub.storage.state import ArticleStore, SendLedger


def _date(month: int, day: int = 1) -> datetime:
    return datetime(2024, month, day, tzinfo=timezone.utc)


def _store(tmp_path: Path, dated: dict[str, datetime | None]) -> ArticleStore:
    store = ArticleStore(tmp_path)
    for article_id, published in dated.items():
        store.put(
            article_id,
            ArticleRecord(
                id=article_id,
                feed_item=FeedItem(title=article_id, link=f"https://example.com/{article_id}", published_at=published),
            ),
        )
    return store


def _published(item: tuple[str, datetime | None]) -> datetime | None:
    return item[1]


class TestApplySelection:
    def test_no_options_keeps_order(self):
        items = [("b", _date(2)), ("a", _date(1)), ("c", None)]
        assert apply_selection(items, SelectionOptions(), _published) == items

    def test_order_reverse_max(self):
        """Reverse is applied before truncation."""
        items = [("A", _date(1)), ("B", _date(2)), ("C", _date(3))]
        options = SelectionOptions(order_by="date", reverse=True, max=2)

        selected = apply_selection(items, options, _published)

        assert [name for name, _ in selected] == ["C", "B"]

    def test_max_two_of_five_most_recent(self):
        items = [(str(month), _date(month)) for month in (3, 1, 5, 2, 4)]
        options = SelectionOptions(order_by="date", reverse=True, max=2)

        selected = apply_selection(items, options, _published)

        assert [published for _, published in selected] == [_date(5), _date(4)]

    def test_before_and_after_are_strict(self):
        items = [("A", _date(1)), ("B", _date(2)), ("C", _date(3))]

        assert apply_selection(items, SelectionOptions(before=_date(2)), _published) == [items[0]]
        assert apply_selection(items, SelectionOptions(after=_date(2)), _published) == [items[2]]
        assert apply_selection(
            items, SelectionOptions(after=_date(1), before=_date(3)), _published
        ) == [items[1]]

    def test_date_options_drop_undated(self):
        items = [("A", _date(1)), ("undated", None), ("C", _date(3))]

        selected = apply_selection(items, SelectionOptions(order_by="date"), _published)

        assert [name for name, _ in selected] == ["A", "C"]

    def test_max_without_dates_keeps_undated(self):
        items = [("undated", None), ("A", _date(1)), ("B", _date(2))]

        selected = apply_selection(items, SelectionOptions(max=2), _published)

        assert [name for name, _ in selected] == ["undated", "A"]

    def test_sort_is_stable(self):
        items = [("first", _date(1)), ("second", _date(1)), ("early", datetime(2023, 1, 1, tzinfo=timezone.utc))]

        selected = apply_selection(items, SelectionOptions(order_by="date"), _published)

        assert [name for name, _ in selected] == ["early", "first", "second"]


class TestSelectionOptions:
    def test_naive_dates_are_utc(self):
        options = SelectionOptions(before=datetime(2024, 1, 1))
        assert options.before == _date(1)

    def test_window_must_be_ordered(self):
        with pytest.raises(ConfigError, match="after"):
            build_selection_options(after=_date(3), before=_date(1))

    def test_max_must_be_positive(self):
        with pytest.raises(ConfigError, match="max"):
            build_selection_options(max=0)

    def test_unknown_order(self):
        with pytest.raises(ConfigError):
            build_selection_options(order_by="title")


class TestSelectUnsent:
    def test_excludes_sent_and_deleted(self, tmp_path):
        store = _store(tmp_path, {"a": _date(1), "b": _date(2), "c": _date(3)})
        store.mark_deleted(["a", "b"])
        ledger = SendLedger()
        ledger.append("r@example.com", ["a"], SendStatus.SUCCESS)

        assert select_unsent(store, ledger, "r@example.com") == ["b"]

    def test_failed_sends_remain_unsent(self, tmp_path):
        store = _store(tmp_path, {"a": _date(1), "b": _date(2)})
        ledger = SendLedger()
        ledger.append("r@example.com", ["a"], SendStatus.FAILED)

        assert select_unsent(store, ledger, "r@example.com") == ["a", "b"]

    def test_other_recipient_not_counted(self, tmp_path):
        store = _store(tmp_path, {"a": _date(1)})
        ledger = SendLedger()
        ledger.append("other@example.com", ["a"], SendStatus.SUCCESS)

        assert select_unsent(store, ledger, "r@example.com") == ["a"]

    def test_applies_options(self, tmp_path):
        store = _store(tmp_path, {"a": _date(1), "b": _date(2), "c": _date(3)})
        options = SelectionOptions(order_by="date", reverse=True, max=2)

        assert select_unsent(store, SendLedger(), "r@example.com", options) == ["c", "b"]

    def test_does_not_modify_inputs(self, tmp_path):
        store = _store(tmp_path, {"a": _date(1)})
        ledger = SendLedger()

        select_unsent(store, ledger, "r@example.com")
        select_unsent(store, ledger, "r@example.com")

        assert len(ledger) == 0
        assert store.ids() == ["a"]
