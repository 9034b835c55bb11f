"""Logging setup shared by the CLI and library modules."""

import logging

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER_NAME = "rss2epub"

NOISY_LOGGERS = ("httpx", "httpcore", "readability", "urllib3")


def setup_logging(level: str | int = "INFO") -> None:
    """Configure the root logger to render through rich on stderr."""
    log_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s", datefmt="[%X]"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Get a module logger under the package namespace."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
