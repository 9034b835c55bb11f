"""Article download and readability extraction."""

import re

import httpx
import lxml.html
from lxml.etree import ParserError as LxmlParserError
from readability import Document
from readability.readability import Unparseable

from rss2epub.config import USER_AGENT
from rss2epub.errors import ExtractionError
from rss2epub.logging_config import get_logger
from rss2epub.models import ExtractedArticle

from .feeds import fetch_response

logger = get_logger("extractor")

SUPPORTED_CONTENT_TYPES = ("text/html", "application/xhtml+xml")

ARTICLE_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

EXCERPT_LENGTH = 200


def is_supported_content_type(content_type: str | None) -> bool:
    """True for HTML and XHTML responses."""
    if not content_type:
        return False
    return content_type.split(";")[0].strip().lower() in SUPPORTED_CONTENT_TYPES


class ArticleExtractor:
    """Downloads a page and reduces it to its readable article."""

    def __init__(self, timeout: int = 30, user_agent: str = USER_AGENT):
        self.timeout = timeout
        self.headers = {"User-Agent": user_agent, "Accept": ARTICLE_ACCEPT}

    def extract(self, url: str) -> ExtractedArticle:
        """
        Fetch `url` and extract its article.

        Raises:
            ExtractionError: the page could not be fetched, is not HTML, or
                has no readable content
        """
        logger.debug(f"Fetching article: {url}")
        try:
            response, elapsed_ms = fetch_response(url, timeout=self.timeout, headers=self.headers)
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeError) as e:
            raise ExtractionError(f"fetch '{url}': {e}") from e

        if response.status_code >= 400:
            raise ExtractionError(
                f"fetch '{url}': {response.status_code} {response.reason_phrase}"
            )

        logger.debug(f"Fetched {url} in {elapsed_ms:.0f} ms")
        return parse_article(
            response.content,
            url=str(response.url),
            content_type=response.headers.get("content-type"),
        )


def parse_article(html: bytes | str, url: str, content_type: str | None) -> ExtractedArticle:
    """Run readability over an HTML document."""
    if not is_supported_content_type(content_type):
        logger.warning(
            f"Unsupported content type {content_type!r} for {url} "
            f"(supported: {', '.join(SUPPORTED_CONTENT_TYPES)})"
        )
        raise ExtractionError(f"unsupported content type: '{content_type}'")

    try:
        document = Document(html, url=url)
        content = document.summary(html_partial=True)
        title = document.short_title() or document.title()
        page = lxml.html.document_fromstring(html)
        body = lxml.html.fragment_fromstring(content, create_parent="div")
        text = _normalize_space(body.text_content())
    except (Unparseable, LxmlParserError, ValueError) as e:
        raise ExtractionError(f"cannot extract article from '{url}': {e}") from e

    if not text:
        raise ExtractionError(f"no readable content in '{url}'")

    return ExtractedArticle(
        url=url,
        title=title or url,
        byline=_meta_content(page, "author", "article:author", "dc.creator"),
        length=len(text),
        excerpt=_meta_content(page, "description", "og:description") or _excerpt(text),
        site_name=_meta_content(page, "og:site_name", "application-name"),
        content=content,
    )


def _meta_content(page: lxml.html.HtmlElement, *names: str) -> str | None:
    """First non-empty <meta> content whose name or property matches."""
    metas = list(page.iter("meta"))
    for name in names:
        for element in metas:
            keys = {(element.get("name") or "").lower(), (element.get("property") or "").lower()}
            if name in keys:
                value = _normalize_space(element.get("content") or "")
                if value:
                    return value
    return None


def _normalize_space(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _excerpt(text: str) -> str:
    if len(text) <= EXCERPT_LENGTH:
        return text
    return text[:EXCERPT_LENGTH].rsplit(" ", 1)[0] + "..."
