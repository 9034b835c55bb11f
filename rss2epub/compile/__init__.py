"""Compile module - build EPUBs from cached articles and send them."""

import time
from collections.abc import Sequence
from typing import Literal, NamedTuple

import httpx

from rss2epub.config import USER_AGENT
from rss2epub.deliver import Attachment, Mailer
from rss2epub.errors import FeedError, SendError
from rss2epub.ingest import Extractor
from rss2epub.ingest.extractor import is_supported_content_type, parse_article
from rss2epub.ingest.feeds import FEED_ACCEPT, fetch_response, parse_feed
from rss2epub.logging_config import get_logger
from rss2epub.models import ExtractedArticle, SendStatus
from rss2epub.storage.state import StateStore

from .epub import Epub, build_epub, chapters_from_articles, chapters_from_store
from .selection import SelectionOptions, apply_selection, select_unsent

logger = get_logger("compile")

__all__ = [
    "SendReport",
    "SelectionOptions",
    "build_epub",
    "build_from_articles",
    "collect_articles",
    "send_bundle",
    "send_individual",
    "send_unsent",
]

SUBJECT_PREFIX = "rss2epub"


class SendReport(NamedTuple):
    """Result of one send run."""

    mode: str
    recipient: str
    selected: list[str]
    sent: list[str]
    failed: list[str]
    errors: list[str]
    duration_seconds: float


def _subject(book: Epub) -> str:
    return f"{SUBJECT_PREFIX}: {book.title}"


def _send_book(sender: Mailer, recipient: str, book: Epub) -> None:
    sender.send(
        recipient,
        _subject(book),
        Attachment(filename=book.filename, data=book.data),
    )


def send_individual(
    state: StateStore,
    sender: Mailer,
    recipient: str,
    options: SelectionOptions | None = None,
) -> SendReport:
    """
    Send each unsent article as its own EPUB.

    Every attempt gets its own ledger entry, so a failure leaves earlier
    articles recorded as sent and later ones still pending. Send failures are
    logged and the loop moves on; a corrupt cache aborts the run.
    """
    start_time = time.time()
    selected = select_unsent(state.articles, state.ledger, recipient, options)
    sent: list[str] = []
    failed: list[str] = []
    errors: list[str] = []

    for i, article_id in enumerate(selected):
        book = build_epub(chapters_from_store(state.articles, [article_id]))
        logger.info(f"[{i + 1}/{len(selected)}] {book.title[:60]}")
        try:
            _send_book(sender, recipient, book)
        except SendError as e:
            logger.error(f"Failed to send {article_id} to {recipient}: {e}")
            state.ledger.append(recipient, [article_id], SendStatus.FAILED)
            failed.append(article_id)
            errors.append(f"{book.title}: {e}")
            continue

        state.ledger.append(recipient, [article_id], SendStatus.SUCCESS)
        sent.append(article_id)

    state.flush()
    return SendReport(
        mode="individual",
        recipient=recipient,
        selected=selected,
        sent=sent,
        failed=failed,
        errors=errors,
        duration_seconds=time.time() - start_time,
    )


def send_bundle(
    state: StateStore,
    sender: Mailer,
    recipient: str,
    options: SelectionOptions | None = None,
    title: str | None = None,
) -> SendReport:
    """
    Send every selected unsent article in one EPUB.

    One ledger entry covers the whole batch. If the send fails, a FAILED
    entry is recorded and the SendError propagates.
    """
    start_time = time.time()
    selected = select_unsent(state.articles, state.ledger, recipient, options)

    if not selected:
        logger.info(f"No unsent articles for {recipient}")
        return SendReport(
            mode="bundle",
            recipient=recipient,
            selected=[],
            sent=[],
            failed=[],
            errors=[],
            duration_seconds=time.time() - start_time,
        )

    # Load everything first so a corrupt cache fails before anything is sent.
    book = build_epub(chapters_from_store(state.articles, selected), title=title)
    logger.info(f"Bundled {len(selected)} article(s) into '{book.title}'")

    try:
        _send_book(sender, recipient, book)
    except SendError:
        state.ledger.append(recipient, selected, SendStatus.FAILED)
        state.flush()
        raise

    state.ledger.append(recipient, selected, SendStatus.SUCCESS)
    state.flush()
    return SendReport(
        mode="bundle",
        recipient=recipient,
        selected=selected,
        sent=list(selected),
        failed=[],
        errors=[],
        duration_seconds=time.time() - start_time,
    )


def send_unsent(
    state: StateStore,
    sender: Mailer,
    recipient: str,
    mode: Literal["individual", "bundle"],
    options: SelectionOptions | None = None,
) -> SendReport:
    """Dispatch to the send function for `mode`."""
    if mode == "individual":
        return send_individual(state, sender, recipient, options)
    return send_bundle(state, sender, recipient, options)


def collect_articles(
    urls: Sequence[str],
    extractor: Extractor,
    options: SelectionOptions | None = None,
    timeout: int = 30,
    user_agent: str = USER_AGENT,
) -> list[ExtractedArticle]:
    """
    Fetch articles for a one-off build, without touching any cache.

    HTML URLs are parsed as single articles. Anything else is parsed as a
    feed; its entries are filtered and ordered with `options`, then each is
    extracted. Any failure aborts the build.
    """
    options = options or SelectionOptions()
    headers = {"User-Agent": user_agent, "Accept": FEED_ACCEPT}
    articles: list[ExtractedArticle] = []

    for url in urls:
        logger.debug(f"Fetching URL: {url}")
        try:
            response, _ = fetch_response(url, timeout=timeout, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeError) as e:
            raise FeedError(f"fetch '{url}': {e}") from e

        if response.status_code >= 400:
            raise FeedError(f"fetch '{url}': {response.status_code} {response.reason_phrase}")

        content_type = response.headers.get("content-type")
        if not content_type:
            logger.warning(f"Cannot determine content type of {url}, trying 'text/html'")
            content_type = "text/html"

        if is_supported_content_type(content_type):
            logger.debug(f"Parsing {url} as an article")
            articles.append(parse_article(response.content, url=url, content_type=content_type))
            continue

        logger.debug(f"Parsing {url} as a feed")
        _, items, _ = parse_feed(response.content, content_type)
        items = [item for item in items if item.link]
        for item in apply_selection(items, options, published=lambda item: item.published_at):
            logger.debug(f"Fetching feed item {item.title} ({item.link})")
            articles.append(extractor.extract(item.link))

    logger.debug(f"Collected {len(articles)} article(s) from {len(urls)} URL(s)")
    return articles


def build_from_articles(articles: Sequence[ExtractedArticle], title: str | None = None) -> Epub:
    """Render freshly extracted articles into one book."""
    return build_epub(chapters_from_articles(articles), title=title)
