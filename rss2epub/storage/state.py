"""
Article cache and send ledger, persisted as one JSON snapshot per directory.

Design decisions:
- One `.rss2epub.json` document per state directory, article bodies as
  sibling `<id>.html` files
- Records are tombstoned, never removed, so ledger references stay valid
- The ledger is append-only; the store flushes after every append
- Snapshots go to a temp file that is fsynced and renamed into place
- An advisory lock keeps a single writer per directory
"""

import fcntl
import json
import os
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import IO, Self

from pydantic import ValidationError

from rss2epub.errors import (
    ArticleNotFoundError,
    CorruptStoreError,
    PersistenceError,
    StateLockedError,
)
from rss2epub.logging_config import get_logger
from rss2epub.models import ArticleRecord, SendLogEntry, SendStatus, StateSnapshot

logger = get_logger("state")

CACHE_FILENAME = ".rss2epub.json"
LOCK_FILENAME = ".rss2epub.lock"
CONTENT_SUFFIX = ".html"


def _atomic_write_text(path: Path, text: str) -> None:
    """Replace `path` with `text` so readers see either the old or new file."""
    tmp_name: str | None = None
    try:
        with NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            tmp_name = handle.name
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise PersistenceError(f"cannot write {path}: {exc}") from exc


class ArticleStore:
    """Per-article metadata keyed by id, with bodies stored beside the cache."""

    def __init__(self, directory: Path, articles: dict[str, ArticleRecord] | None = None):
        self.directory = directory
        self._articles: dict[str, ArticleRecord] = articles if articles is not None else {}

    def __contains__(self, article_id: object) -> bool:
        return article_id in self._articles

    def __len__(self) -> int:
        return len(self._articles)

    def get(self, article_id: str) -> ArticleRecord:
        """Get a record by id. Raises ArticleNotFoundError if unknown."""
        try:
            return self._articles[article_id]
        except KeyError:
            raise ArticleNotFoundError(article_id) from None

    def put(self, article_id: str, record: ArticleRecord) -> bool:
        """
        Insert a record, or update the `deleted` flag of an existing one.

        Feed and extraction metadata are write-once per id; a record that
        tries to change them is rejected with ValueError.

        Returns True if the record was inserted, False if it already existed.
        """
        if record.id != article_id:
            raise ValueError(f"record id {record.id!r} does not match key {article_id!r}")

        existing = self._articles.get(article_id)
        if existing is None:
            self._articles[article_id] = record
            return True

        if (
            existing.feed_item != record.feed_item
            or existing.extracted_meta != record.extracted_meta
        ):
            raise ValueError(f"article {article_id} is write-once; only 'deleted' may change")

        existing.deleted = record.deleted
        return False

    def mark_deleted(self, present_ids: Iterable[str]) -> list[str]:
        """Tombstone every record not in `present_ids`. Returns newly deleted ids."""
        present = set(present_ids)
        newly_deleted = []
        for article_id, record in self._articles.items():
            if article_id not in present and not record.deleted:
                record.deleted = True
                newly_deleted.append(article_id)
        return newly_deleted

    def ids(self, include_deleted: bool = False) -> list[str]:
        """Article ids in discovery order."""
        return [
            article_id
            for article_id, record in self._articles.items()
            if include_deleted or not record.deleted
        ]

    def records(self, include_deleted: bool = False) -> list[ArticleRecord]:
        return [
            record
            for record in self._articles.values()
            if include_deleted or not record.deleted
        ]

    def content_path(self, article_id: str) -> Path:
        return self.directory / f"{article_id}{CONTENT_SUFFIX}"

    def save_content(self, article_id: str, content: str) -> None:
        """Store the extracted HTML body for an article."""
        _atomic_write_text(self.content_path(article_id), content)

    def load_content(self, article_id: str) -> str:
        """
        Load the HTML body of a cached article.

        Raises ArticleNotFoundError for an unknown id, and CorruptStoreError
        when the record exists but its body file does not.
        """
        if article_id not in self._articles:
            raise ArticleNotFoundError(article_id)

        path = self.content_path(article_id)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise CorruptStoreError(article_id) from None
        except OSError as exc:
            raise PersistenceError(f"cannot read {path}: {exc}") from exc

    def as_dict(self) -> dict[str, ArticleRecord]:
        return dict(self._articles)


class SendLedger:
    """Append-only log of delivery attempts."""

    def __init__(
        self,
        entries: Iterable[SendLogEntry] = (),
        on_append: Callable[[SendLogEntry], None] | None = None,
    ):
        self._entries: list[SendLogEntry] = list(entries)
        self._on_append = on_append

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[SendLogEntry, ...]:
        return tuple(self._entries)

    def append(
        self,
        recipient: str,
        article_ids: Iterable[str],
        status: SendStatus | str,
    ) -> SendLogEntry:
        """Record one attempt, stamped now."""
        entry = SendLogEntry(
            sent_at=datetime.now(UTC),
            recipient=recipient,
            article_ids=tuple(article_ids),
            status=SendStatus(status),
        )
        self._entries.append(entry)
        logger.debug(
            f"Logged {entry.status.value} send of {len(entry.article_ids)} article(s) to {recipient}"
        )
        if self._on_append is not None:
            self._on_append(entry)
        return entry

    def sent_article_ids(self, recipient: str | None = None) -> set[str]:
        """Ids delivered successfully to `recipient`, or to anyone if None."""
        return {
            article_id
            for entry in self._entries
            if entry.status is SendStatus.SUCCESS
            and (recipient is None or entry.recipient == recipient)
            for article_id in entry.article_ids
        }

    def recipients(self) -> list[str]:
        """Every recipient that appears in the ledger, in first-seen order."""
        return list(dict.fromkeys(entry.recipient for entry in self._entries))


class StateStore:
    """
    Owns one state directory for the duration of an invocation.

    Lifecycle is open -> operate -> flush -> close; use it as a context
    manager. The store holds an exclusive lock on the directory while open,
    and writes a snapshot after every ledger append.
    """

    def __init__(self, directory: Path, flush_on_append: bool = True, read_only: bool = False):
        self.directory = directory
        self.read_only = read_only
        self.cache_path = directory / CACHE_FILENAME
        self.lock_path = directory / LOCK_FILENAME
        self.flush_on_append = flush_on_append
        self.articles = ArticleStore(directory)
        self.ledger = SendLedger()
        self._lock_handle: IO[str] | None = None
        self._is_open = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    def open(self) -> Self:
        """
        Lock the directory and load the snapshot. A missing file is an empty store.

        A read-only store takes no lock and writes nothing; its directory must
        already exist.
        """
        if self._is_open:
            return self

        if self.read_only:
            if not self.directory.is_dir():
                raise PersistenceError(f"no state directory at {self.directory}")
        else:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise PersistenceError(
                    f"cannot create state directory {self.directory}: {exc}"
                ) from exc
            self._acquire_lock()

        try:
            snapshot = self._read_snapshot()
        except Exception:
            self._release_lock()
            raise

        on_append = self._flush_after_append if self.flush_on_append else None
        self.articles = ArticleStore(self.directory, snapshot.articles)
        self.ledger = SendLedger(snapshot.emails, on_append=on_append)
        self._is_open = True
        logger.debug(
            f"Opened state {self.directory}: {len(self.articles)} articles, "
            f"{len(self.ledger)} ledger entries"
        )
        return self

    def flush(self) -> None:
        """Write the current snapshot to disk."""
        if not self._is_open:
            raise PersistenceError(f"state store {self.directory} is not open")
        if self.read_only:
            raise PersistenceError(f"state store {self.directory} was opened read-only")

        snapshot = StateSnapshot(emails=list(self.ledger.entries), articles=self.articles.as_dict())
        _atomic_write_text(
            self.cache_path,
            snapshot.model_dump_json(by_alias=True, exclude_none=True),
        )
        logger.debug(f"Wrote state snapshot {self.cache_path}")

    def close(self) -> None:
        """Flush and release the directory."""
        if not self._is_open:
            return
        try:
            if not self.read_only:
                self.flush()
        finally:
            self._is_open = False
            self._release_lock()

    def __enter__(self) -> Self:
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
            return

        # Keep per-item work done before the failure; the original error wins.
        try:
            self.close()
        except PersistenceError as flush_exc:
            logger.error(f"Failed to save state after error: {flush_exc}")

    def _flush_after_append(self, entry: SendLogEntry) -> None:
        self.flush()

    def _read_snapshot(self) -> StateSnapshot:
        try:
            text = self.cache_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"No cache file at {self.cache_path}, starting empty")
            return StateSnapshot()
        except OSError as exc:
            raise PersistenceError(f"cannot read {self.cache_path}: {exc}") from exc

        try:
            return StateSnapshot.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise PersistenceError(f"corrupt state file {self.cache_path}: {exc}") from exc

    def _acquire_lock(self) -> None:
        try:
            handle = open(self.lock_path, "a+", encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"cannot open lock file {self.lock_path}: {exc}") from exc

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            raise StateLockedError(
                f"state directory {self.directory} is in use by another process"
            ) from None
        except OSError as exc:
            handle.close()
            raise PersistenceError(f"cannot lock {self.lock_path}: {exc}") from exc

        self._lock_handle = handle

    def _release_lock(self) -> None:
        if self._lock_handle is None:
            return
        try:
            fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._lock_handle.close()
            self._lock_handle = None
