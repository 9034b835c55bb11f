"""Ingestion module - sync feeds into the article cache."""

import time
from collections.abc import Callable
from typing import NamedTuple, Protocol

from rss2epub.errors import ExtractionError, InvalidURLError
from rss2epub.logging_config import get_logger
from rss2epub.models import ArticleRecord, ExtractedArticle
from rss2epub.storage.state import ArticleStore

from .extractor import ArticleExtractor
from .feeds import FeedResult, fetch_feed, generate_article_id

logger = get_logger("ingest")

__all__ = ["ArticleExtractor", "Extractor", "SyncResult", "reconcile"]


class Extractor(Protocol):
    """Anything that turns an article URL into readable content."""

    def extract(self, url: str) -> ExtractedArticle:
        ...


class SyncResult(NamedTuple):
    """Result of reconciling one feed with the article cache."""

    feed_url: str
    feed_title: str
    ids_in_feed: set[str]
    new_ids: list[str]
    deleted_ids: list[str]
    revived_ids: list[str]
    skipped: int
    errors: list[str]
    duration_seconds: float


def reconcile(
    feed_url: str,
    store: ArticleStore,
    extractor: Extractor,
    fetcher: Callable[[str], FeedResult] = fetch_feed,
) -> SyncResult:
    """
    Bring the article cache in line with the current contents of a feed.

    New entries are extracted and cached. Entries already cached are never
    refetched; if one had been tombstoned it is revived. Cached articles
    missing from the feed are tombstoned. A failure on one entry is logged
    and skipped; a failure fetching the feed itself raises FeedError.
    """
    start_time = time.time()

    feed = fetcher(feed_url)

    ids_in_feed: set[str] = set()
    new_ids: list[str] = []
    revived_ids: list[str] = []
    errors: list[str] = []
    skipped = 0

    for item in feed.items:
        if not item.link:
            logger.info(f"{item.title} ({item.id}): no link, skipping")
            skipped += 1
            continue

        try:
            article_id = generate_article_id(item.link)
        except InvalidURLError as e:
            logger.warning(f"{item.title}: {e}, skipping")
            skipped += 1
            continue

        ids_in_feed.add(article_id)

        if article_id in store:
            record = store.get(article_id)
            if record.deleted:
                logger.info(f"{item.title} ({article_id}) is back in the feed, restoring")
                store.put(article_id, record.model_copy(update={"deleted": False}))
                revived_ids.append(article_id)
            else:
                logger.debug(f"skipping {item.link}, exists in cache ({article_id})")
            continue

        try:
            article = extractor.extract(item.link)
        except ExtractionError as e:
            logger.error(f"failed to parse article '{item.title}': {e}")
            errors.append(f"{item.link}: {e}")
            continue

        store.save_content(article_id, article.content)
        store.put(
            article_id,
            ArticleRecord(
                id=article_id,
                deleted=False,
                feed_item=item,
                extracted_meta=article.meta,
            ),
        )
        new_ids.append(article_id)
        logger.info(f"Cached {item.title} ({article_id})")

    deleted_ids = store.mark_deleted(ids_in_feed)
    if deleted_ids:
        logger.info(f"{len(deleted_ids)} article(s) no longer in {feed_url}")

    duration = time.time() - start_time
    logger.info(
        f"Sync complete for {feed.title}: {len(new_ids)} new, {len(deleted_ids)} removed, "
        f"{len(errors)} failed, {duration:.1f}s"
    )

    return SyncResult(
        feed_url=feed_url,
        feed_title=feed.title,
        ids_in_feed=ids_in_feed,
        new_ids=new_ids,
        deleted_ids=deleted_ids,
        revived_ids=revived_ids,
        skipped=skipped,
        errors=errors,
        duration_seconds=duration,
    )
