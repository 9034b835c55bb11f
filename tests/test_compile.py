"""Tests for EPUB building and send runs."""

import io
import logging
import zipfile
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from rss2epub.compile import (
    build_from_articles,
    collect_articles,
    send_bundle,
    send_individual,
    send_unsent,
)
from rss2epub.compile.epub import Chapter, build_epub, default_title, safe_filename
from rss2epub.compile.selection import SelectionOptions, select_unsent
from rss2epub.errors import CorruptStoreError, FeedError, SendError
from rss2epub.models import (
    ArticleRecord,
    ExtractedArticle,
    ExtractedMeta,
    FeedItem,
    SendStatus,
)
from rss2epub.storage.state import StateStore


RSS = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Feed</title>
<item><title>A</title><link>https://example.com/a</link><pubDate>Mon, 01 Jan 2024 00:00:00 GMT</pubDate></item>
<item><title>B</title><link>https://example.com/b</link><pubDate>Thu, 01 Feb 2024 00:00:00 GMT</pubDate></item>
<item><title>C</title><link>https://example.com/c</link><pubDate>Fri, 01 Mar 2024 00:00:00 GMT</pubDate></item>
</channel></rss>
"""


class FakeMailer:
    """Records every send; fails on the configured call numbers."""

    def __init__(self, fail_on: set[int] | None = None):
        self.fail_on = fail_on or set()
        self.sent: list[tuple[str, str, str]] = []
        self.calls = 0

    def send(self, to, subject, attachment):
        self.calls += 1
        if self.calls in self.fail_on:
            raise SendError("connection refused")
        self.sent.append((to, subject, attachment.filename))


def _add_article(state: StateStore, article_id: str, month: int, with_body: bool = True) -> None:
    state.articles.put(
        article_id,
        ArticleRecord(
            id=article_id,
            feed_item=FeedItem(
                title=f"Article {article_id}",
                link=f"https://example.com/{article_id}",
                published_at=datetime(2024, month, 1, tzinfo=timezone.utc),
            ),
            extracted_meta=ExtractedMeta(
                title=f"Article {article_id}", byline=f"Writer {article_id}", excerpt="..."
            ),
        ),
    )
    if with_body:
        state.articles.save_content(article_id, f"<p>Body {article_id}</p>")


@pytest.fixture
def state(tmp_path):
    with StateStore(tmp_path / "feed") as store:
        for month, article_id in enumerate(("a1", "a2", "a3"), start=1):
            _add_article(store, article_id, month)
        yield store


class TestSendIndividual:
    def test_second_send_fails(self, state):
        """Each article gets its own ledger entry; a failure does not stop the run."""
        mailer = FakeMailer(fail_on={2})

        report = send_individual(state, mailer, "r@example.com")

        entries = state.ledger.entries
        assert [(entry.article_ids, entry.status) for entry in entries] == [
            (("a1",), SendStatus.SUCCESS),
            (("a2",), SendStatus.FAILED),
            (("a3",), SendStatus.SUCCESS),
        ]
        assert report.sent == ["a1", "a3"]
        assert report.failed == ["a2"]
        assert len(report.errors) == 1
        assert select_unsent(state.articles, state.ledger, "r@example.com") == ["a2"]

    def test_send_failure_is_logged(self, state, caplog):
        with caplog.at_level(logging.ERROR, logger="rss2epub.compile"):
            send_individual(state, FakeMailer(fail_on={1}), "r@example.com")

        failures = [record for record in caplog.records if record.levelno == logging.ERROR]
        assert len(failures) == 1
        assert "a1" in failures[0].getMessage()
        assert "connection refused" in failures[0].getMessage()

    def test_subject_and_filename_from_article(self, state):
        mailer = FakeMailer()

        send_individual(state, mailer, "r@example.com", SelectionOptions(max=1))

        assert mailer.sent == [("r@example.com", "rss2epub: Article a1", "Article a1.epub")]

    def test_nothing_unsent(self, state):
        send_individual(state, FakeMailer(), "r@example.com")
        mailer = FakeMailer()

        report = send_individual(state, mailer, "r@example.com")

        assert report.selected == []
        assert mailer.calls == 0

    def test_corrupt_store_aborts(self, state):
        _add_article(state, "a4", 4, with_body=False)
        mailer = FakeMailer()

        with pytest.raises(CorruptStoreError):
            send_individual(state, mailer, "r@example.com")

        # Articles before the corrupt one were sent and recorded.
        assert mailer.calls == 3
        assert len(state.ledger) == 3


class TestSendBundle:
    def test_one_entry_for_all(self, state):
        mailer = FakeMailer()

        report = send_bundle(state, mailer, "r@example.com")

        assert mailer.calls == 1
        assert len(state.ledger) == 1
        entry = state.ledger.entries[0]
        assert entry.article_ids == ("a1", "a2", "a3")
        assert entry.status is SendStatus.SUCCESS
        assert report.sent == ["a1", "a2", "a3"]

    def test_failure_recorded_and_raised(self, state):
        mailer = FakeMailer(fail_on={1})

        with pytest.raises(SendError):
            send_bundle(state, mailer, "r@example.com")

        entry = state.ledger.entries[-1]
        assert entry.status is SendStatus.FAILED
        assert select_unsent(state.articles, state.ledger, "r@example.com") == ["a1", "a2", "a3"]

    def test_corrupt_store_sends_nothing(self, state):
        _add_article(state, "a4", 4, with_body=False)
        mailer = FakeMailer()

        with pytest.raises(CorruptStoreError):
            send_bundle(state, mailer, "r@example.com")

        assert mailer.calls == 0
        assert len(state.ledger) == 0

    def test_empty_selection_sends_nothing(self, state):
        mailer = FakeMailer()

        report = send_bundle(state, mailer, "r@example.com", SelectionOptions(after=datetime(2030, 1, 1)))

        assert report.selected == []
        assert mailer.calls == 0
        assert len(state.ledger) == 0

    def test_dispatch_by_mode(self, state):
        mailer = FakeMailer()

        report = send_unsent(state, mailer, "r@example.com", "individual")

        assert report.mode == "individual"
        assert mailer.calls == 3


class TestBuildEpub:
    def test_is_epub_zip(self):
        book = build_epub([Chapter(title="One", content="<p>1</p>"), Chapter(title="Two", content="<p>2</p>")])

        archive = zipfile.ZipFile(io.BytesIO(book.data))
        assert archive.namelist()[0] == "mimetype"
        assert archive.read("mimetype") == b"application/epub+zip"

    def test_single_chapter_inherits_metadata(self):
        published = datetime(2024, 5, 1, tzinfo=timezone.utc)
        chapter = Chapter(
            title="Solo", content="<p>x</p>", author="Jane", excerpt="About it", published_at=published
        )

        book = build_epub([chapter])

        assert book.title == "Solo"
        assert book.author == "Jane"
        assert book.description == "About it"
        assert book.date == published

    def test_collection_defaults(self):
        now = datetime(2024, 6, 7, tzinfo=timezone.utc)
        chapters = [
            Chapter(title="One", content="<p>1</p>", author="Jane"),
            Chapter(title="Two", content="<p>2</p>", author="Jane"),
            Chapter(title="Three", content="<p>3</p>"),
        ]

        book = build_epub(chapters, now=now)

        assert book.title == default_title(now) == "Article Collection, Generated Fri Jun 07 2024"
        assert book.author == "Jane"
        assert book.description == "Included Articles:\n  One\n  Two\n  Three"
        assert book.date == now

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            build_epub([])

    def test_safe_filename(self):
        assert safe_filename('What: "Now"?') == "What Now"
        assert safe_filename("///") == "rss2epub-collection"


class TestCollectArticles:
    def _response(self, content: bytes, content_type: str | None, status_code: int = 200):
        headers = {"content-type": content_type} if content_type else {}
        return Mock(status_code=status_code, content=content, headers=headers, reason_phrase="OK")

    @patch("rss2epub.ingest.feeds.httpx.get")
    def test_feed_urls_are_expanded(self, mock_get):
        mock_get.return_value = self._response(RSS, "application/rss+xml")
        extractor = Mock()
        extractor.extract.side_effect = lambda url: ExtractedArticle(url=url, title=url, content="<p>x</p>")

        articles = collect_articles(
            ["https://example.com/feed"],
            extractor,
            SelectionOptions(order_by="date", reverse=True, max=2),
        )

        assert [article.url for article in articles] == ["https://example.com/c", "https://example.com/b"]

    @patch("rss2epub.compile.parse_article")
    @patch("rss2epub.ingest.feeds.httpx.get")
    def test_html_is_single_article(self, mock_get, mock_parse):
        mock_get.return_value = self._response(b"<html></html>", None)
        mock_parse.return_value = ExtractedArticle(url="https://example.com/a", title="A", content="<p>x</p>")
        extractor = Mock()

        articles = collect_articles(["https://example.com/a"], extractor)

        assert len(articles) == 1
        assert mock_parse.call_args.kwargs["content_type"] == "text/html"
        extractor.extract.assert_not_called()

    @patch("rss2epub.ingest.feeds.httpx.get")
    def test_http_error_aborts(self, mock_get):
        mock_get.return_value = self._response(b"", "text/html", status_code=404)

        with pytest.raises(FeedError):
            collect_articles(["https://example.com/missing"], Mock())

    def test_build_from_articles(self):
        book = build_from_articles(
            [ExtractedArticle(url="https://example.com/a", title="Only", byline="Jo", content="<p>x</p>")]
        )

        assert book.title == "Only"
        assert book.filename == "Only.epub"
