"""Exception hierarchy for rss2epub."""


class Rss2EpubError(Exception):
    """Base class for all errors raised by rss2epub."""


class ConfigError(Rss2EpubError):
    """Invalid settings, transport, feed or selection configuration."""


class InvalidURLError(Rss2EpubError, ValueError):
    """A URL could not be normalized into an article id."""


class FeedError(Rss2EpubError):
    """A feed could not be fetched or parsed. Fatal for the whole sync."""


class ExtractionError(Rss2EpubError):
    """A single article could not be fetched or made readable."""


class ArticleNotFoundError(Rss2EpubError, KeyError):
    """No article record exists for the requested id."""

    def __init__(self, article_id: str):
        super().__init__(article_id)
        self.article_id = article_id

    def __str__(self) -> str:
        return f'no article with id "{self.article_id}"'


class CorruptStoreError(Rss2EpubError):
    """An article record exists but its stored content does not."""

    def __init__(self, article_id: str, message: str | None = None):
        super().__init__(
            message
            or f'bad cache: article has entry, but no corresponding content. id="{article_id}"'
        )
        self.article_id = article_id


class SendError(Rss2EpubError):
    """Mail delivery failed."""


class PersistenceError(Rss2EpubError):
    """The state snapshot could not be read or written."""


class StateLockedError(PersistenceError):
    """Another process holds the state directory."""
