"""rss2epub - turn articles and feeds into EPUB files and mail them."""

__version__ = "0.4.0"
