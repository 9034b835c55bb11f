"""EPUB assembly with ebooklib."""

import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from html import escape
from io import BytesIO
from uuid import uuid4

from ebooklib import epub

from rss2epub.models import ExtractedArticle
from rss2epub.storage.state import ArticleStore

UNSAFE_FILENAME_CHARS = re.compile(r"""[/\\:*?"'<>|]""")

BOOK_LANGUAGE = "en"


@dataclass
class Chapter:
    """One article inside a book."""

    title: str
    content: str
    author: str | None = None
    url: str | None = None
    excerpt: str | None = None
    published_at: datetime | None = None


@dataclass
class Epub:
    """A rendered book plus the metadata it was rendered with."""

    title: str
    description: str
    date: datetime
    author: str
    data: bytes

    @property
    def filename(self) -> str:
        return safe_filename(self.title) + ".epub"


def safe_filename(title: str) -> str:
    """Strip characters that are unsafe in attachment and file names."""
    return UNSAFE_FILENAME_CHARS.sub("", title).strip() or "rss2epub-collection"


def default_title(now: datetime) -> str:
    return f"Article Collection, Generated {now:%a %b %d %Y}"


def chapters_from_store(store: ArticleStore, article_ids: Sequence[str]) -> list[Chapter]:
    """
    Load every requested article before anything is rendered.

    Raises ArticleNotFoundError or CorruptStoreError on the first bad id.
    """
    chapters = []
    for article_id in article_ids:
        record = store.get(article_id)
        content = store.load_content(article_id)
        meta = record.extracted_meta
        chapters.append(
            Chapter(
                title=record.title,
                content=content,
                author=meta.byline if meta else None,
                url=record.feed_item.link,
                excerpt=meta.excerpt if meta else record.feed_item.description,
                published_at=record.published_at,
            )
        )
    return chapters


def chapters_from_articles(articles: Sequence[ExtractedArticle]) -> list[Chapter]:
    return [
        Chapter(
            title=article.title,
            content=article.content,
            author=article.byline,
            url=article.url,
            excerpt=article.excerpt,
        )
        for article in articles
    ]


def build_epub(
    chapters: Sequence[Chapter],
    title: str | None = None,
    description: str | None = None,
    date: datetime | None = None,
    author: str | None = None,
    now: datetime | None = None,
) -> Epub:
    """
    Render chapters into an EPUB.

    A single-chapter book takes its title, description, date and author from
    that chapter unless they are given explicitly.
    """
    if not chapters:
        raise ValueError("cannot build an EPUB without chapters")

    now = now or datetime.now(UTC)

    if len(chapters) == 1:
        only = chapters[0]
        title = title or only.title
        description = description or only.excerpt
        date = date or only.published_at
        author = author or only.author

    title = title or default_title(now)
    description = description or "Included Articles:\n" + "\n".join(
        f"  {chapter.title}" for chapter in chapters
    )
    date = date or now
    if not author:
        bylines = [chapter.author for chapter in chapters if chapter.author]
        author = ", ".join(dict.fromkeys(bylines)) or "Unknown"

    data = _render(chapters, title=title, description=description, date=date, author=author)
    return Epub(title=title, description=description, date=date, author=author, data=data)


def _render(
    chapters: Sequence[Chapter],
    title: str,
    description: str,
    date: datetime,
    author: str,
) -> bytes:
    book = epub.EpubBook()
    book.set_identifier(f"urn:uuid:{uuid4()}")
    book.set_title(title)
    book.set_language(BOOK_LANGUAGE)
    book.add_author(author)
    book.add_metadata("DC", "description", description)
    book.add_metadata("DC", "date", date.isoformat())

    items = []
    for index, chapter in enumerate(chapters, start=1):
        item = epub.EpubHtml(
            title=chapter.title,
            file_name=f"chapter_{index:03d}.xhtml",
            lang=BOOK_LANGUAGE,
        )
        item.content = _chapter_html(chapter)
        book.add_item(item)
        items.append(item)

    book.toc = items
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.spine = ["nav", *items]

    buffer = BytesIO()
    epub.write_epub(buffer, book)
    return buffer.getvalue()


def _chapter_html(chapter: Chapter) -> str:
    parts = [f"<h1>{escape(chapter.title)}</h1>"]
    if chapter.author:
        parts.append(f"<p><em>{escape(chapter.author)}</em></p>")
    if chapter.url:
        url = escape(chapter.url, quote=True)
        parts.append(f'<p><a href="{url}">{url}</a></p>')
    parts.append(chapter.content)
    return "\n".join(parts)
