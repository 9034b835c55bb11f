"""
RSS/Atom feed fetching with error handling and timeout management.
"""

import calendar
import codecs
import hashlib
import re
from datetime import datetime, timezone
from time import perf_counter
from typing import NamedTuple
from urllib.parse import urlsplit, urlunsplit

import feedparser
import httpx
from dateutil.parser import ParserError
from dateutil.parser import parse as parse_date

from rss2epub.config import USER_AGENT
from rss2epub.errors import FeedError, InvalidURLError
from rss2epub.logging_config import get_logger
from rss2epub.models import FeedItem

logger = get_logger("feeds")

FEED_ACCEPT = (
    "application/atom+xml,application/rss+xml,application/feed+json,"
    "application/xml,application/json,text/html;q=0.9,application/xhtml+xml;q=0.9"
)

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/122.0.0.0 Safari/537.36"
    ),
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,"
        "application/rss+xml,application/atom+xml,*/*;q=0.8"
    ),
    "Accept-Language": "en-US,en;q=0.9",
}

BOT_FILTER_RETRY_STATUS_CODES = {403, 404}

DEFAULT_CHARSET = "utf-8"

UNSAFE_URL_CHARS = re.compile(r"[\x00-\x20\x7f]")


class FeedResult(NamedTuple):
    """Result of fetching a feed."""

    feed_url: str
    title: str
    items: list[FeedItem]
    status_code: int | None = None
    final_url: str | None = None
    content_type: str | None = None
    attempts: int = 1
    response_time_ms: float | None = None
    bozo: bool = False
    bozo_exception: str | None = None


def generate_article_id(url: str) -> str:
    """
    Generate a stable ID for an article from its URL.

    The fragment is dropped; scheme, host, path and query are kept. The id
    is the hex MD5 of the normalized URL. URLs that could never be fetched
    (bad port, control characters, unencodable host) raise InvalidURLError.
    """
    url = url.strip()
    if UNSAFE_URL_CHARS.search(url):
        raise InvalidURLError(f"invalid URL {url!r}: contains whitespace or control characters")

    try:
        parts = urlsplit(url)
        parts.port  # raises ValueError on a non-numeric or out-of-range port
        if parts.hostname:
            parts.hostname.encode("idna")
    except (ValueError, UnicodeError) as e:
        raise InvalidURLError(f"invalid URL {url!r}: {e}") from e

    if not parts.scheme or not parts.hostname:
        raise InvalidURLError(f"invalid URL {url!r}: scheme and host are required")

    normalized = urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()


def fetch_response(
    url: str,
    timeout: int,
    headers: dict[str, str],
) -> tuple[httpx.Response, float]:
    """Fetch a URL and return (response, elapsed_ms)."""
    started = perf_counter()
    response = httpx.get(
        url,
        timeout=timeout,
        follow_redirects=True,
        headers=headers,
    )
    elapsed_ms = (perf_counter() - started) * 1000
    return response, elapsed_ms


def fetch_feed(
    feed_url: str,
    timeout: int = 30,
    user_agent: str = USER_AGENT,
) -> FeedResult:
    """
    Fetch and parse an RSS/Atom feed.

    Args:
        feed_url: URL of the feed
        timeout: Request timeout in seconds
        user_agent: User-Agent sent on the first attempt

    Returns:
        FeedResult with every entry of the feed

    Raises:
        FeedError: the feed could not be downloaded or parsed
    """
    logger.info(f"Fetching feed: {feed_url}")
    attempts = 0
    attempt_summaries: list[str] = []
    feed_headers = {"User-Agent": user_agent, "Accept": FEED_ACCEPT}

    try:
        response = None
        response_time_ms: float | None = None
        for profile_name, headers in (
            ("rss2epub", feed_headers),
            ("browser", BROWSER_HEADERS),
        ):
            attempts += 1
            response, response_time_ms = fetch_response(
                url=feed_url,
                timeout=timeout,
                headers=headers,
            )
            attempt_summaries.append(f"{response.status_code} ({profile_name})")

            if response.status_code < 400:
                break

            # Some feed hosts/CDNs block simple bot user agents with false 404/403.
            if (
                response.status_code in BOT_FILTER_RETRY_STATUS_CODES
                and headers is feed_headers
            ):
                logger.debug(
                    f"{feed_url}: got {response.status_code} with rss2epub headers, retrying "
                    "with browser-like headers"
                )
                continue

            break
    except httpx.TimeoutException as e:
        logger.error(f"Timeout fetching {feed_url}: {e}")
        raise FeedError(f"Request timed out after {timeout}s: {e}") from e
    except (httpx.HTTPError, httpx.InvalidURL, UnicodeError) as e:
        logger.error(f"HTTP error fetching {feed_url}: {e}")
        raise FeedError(f"fetch '{feed_url}': {e}") from e

    if response is None:
        raise FeedError("Feed request did not produce a response")

    if response.status_code >= 400:
        error_msg = _format_http_error(response, attempt_summaries)
        logger.warning(f"Feed HTTP error for {feed_url}: {error_msg}")
        raise FeedError(error_msg)

    content_type = response.headers.get("content-type")
    title, items, bozo_exception = parse_feed(response.content, content_type)
    logger.info(f"Found {len(items)} entries in {title or feed_url}")

    return FeedResult(
        feed_url=feed_url,
        title=title or feed_url,
        items=items,
        status_code=response.status_code,
        final_url=str(response.url),
        content_type=content_type,
        attempts=attempts,
        response_time_ms=response_time_ms,
        bozo=bozo_exception is not None,
        bozo_exception=bozo_exception,
    )


def charset_from_content_type(content_type: str | None) -> str:
    """
    Pick the charset named in a Content-Type header, or fall back to UTF-8.

    Raises FeedError when the charset is not one Python can decode.
    """
    charset = None
    for part in (content_type or "").split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key.strip().lower() == "charset" and value.strip():
            charset = value.strip().strip('"')
            break

    if charset is None:
        logger.debug(f"charset not in content type {content_type!r}, using {DEFAULT_CHARSET}")
        return DEFAULT_CHARSET

    try:
        codecs.lookup(charset)
    except LookupError:
        raise FeedError(f"charset not allowed: {charset}") from None
    return charset


def parse_feed(
    data: bytes,
    content_type: str | None = None,
) -> tuple[str, list[FeedItem], str | None]:
    """
    Parse feed bytes into (feed title, items, parser warning).

    Raises FeedError if the document is not a feed at all.
    """
    headers = {}
    if content_type:
        charset_from_content_type(content_type)
        headers["content-type"] = content_type

    feed = feedparser.parse(data, response_headers=headers)

    # Some bozo exceptions are recoverable (e.g., CharacterEncodingOverride)
    bozo_exception = str(feed.bozo_exception) if feed.bozo and feed.get("bozo_exception") else None
    if feed.bozo and not feed.entries and not feed.feed.get("title"):
        raise FeedError(f"Feed parse error: {bozo_exception or 'not a feed'}")

    items = [_entry_to_item(entry) for entry in feed.entries]
    return feed.feed.get("title", ""), items, bozo_exception


def _entry_to_item(entry: dict) -> FeedItem:
    return FeedItem(
        title=entry.get("title") or "Untitled",
        id=entry.get("id"),
        link=entry.get("link") or None,
        published_at=_parse_entry_date(entry),
        description=entry.get("summary"),
    )


def _format_http_error(response: httpx.Response, attempt_summaries: list[str]) -> str:
    """Build a compact HTTP error message with diagnostics."""
    parts = [f"HTTP {response.status_code} for {response.url}"]
    if attempt_summaries:
        parts.append(f"attempts: {', '.join(attempt_summaries)}")
    if content_type := response.headers.get("content-type"):
        parts.append(f"content-type: {content_type}")
    return " | ".join(parts)


def _parse_entry_date(entry: dict) -> datetime | None:
    """Parse publication date from feed entry."""
    # Try different date fields
    for field in ["published_parsed", "updated_parsed", "created_parsed"]:
        if parsed := entry.get(field):
            try:
                return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
            except (ValueError, OverflowError):
                continue

    # Try string parsing as fallback
    for field in ["published", "updated", "created"]:
        if date_str := entry.get(field):
            try:
                dt = parse_date(date_str)
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return dt
            except (ValueError, ParserError, OverflowError):
                continue

    return None
