"""Configuration management using Pydantic Settings."""

import json
from datetime import datetime
from pathlib import Path
from typing import Literal

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    ValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from rss2epub.errors import ConfigError

# XDG directories for user configuration and state
XDG_CONFIG_PATH = Path.home() / ".config" / "rss2epub"
XDG_DATA_PATH = Path.home() / ".local" / "share" / "rss2epub"

USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64; rv:109.0) Gecko/20100101 rss2epub/1"

SendMode = Literal["individual", "bundle"]


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="RSS2EPUB_",
        env_file=[
            XDG_CONFIG_PATH / "config.env",  # User config (lower priority)
            ".env",  # Project .env (higher priority)
        ],
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    data_dir: Path = Field(default=XDG_DATA_PATH, description="Root of per-feed state directories")
    feeds_file: Path = Field(default=XDG_CONFIG_PATH / "feeds.yaml", description="Configured feeds")
    transport_config: Path = Field(
        default=XDG_CONFIG_PATH / "transports.json",
        description="JSON file of named mail transports",
    )

    # Mail
    transport: str | None = Field(default=None, description="Default transport name")
    email_to: str | None = Field(default=None, description="Default recipient address")
    default_mode: SendMode = Field(default="bundle", description="Default send mode")

    # Fetching
    request_timeout: int = Field(default=30, ge=1, description="HTTP timeout in seconds")
    user_agent: str = Field(default=USER_AGENT, description="User-Agent for feed and article requests")

    # Logging
    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("RSS2EPUB_LOG_LEVEL", "RSS2EPUB_LOG"),
        description="Logging level",
    )

    @field_validator("data_dir", "feeds_file", "transport_config", mode="after")
    @classmethod
    def expand_home(cls, value: Path) -> Path:
        return value.expanduser()


class SMTPAuth(BaseModel):
    """Credentials for an SMTP login."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    user: str = Field(..., min_length=1)
    password: str = Field(..., alias="pass")


class SMTPTransport(BaseModel):
    """An SMTP server entry in transports.json."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    type: Literal["smtp"]
    sender: str = Field(..., alias="from", min_length=1, description="From address")
    host: str = Field(..., min_length=1)
    port: int = Field(default=587, ge=1, le=65535)
    tls: bool = Field(default=True, description="Require STARTTLS")
    auth: SMTPAuth | None = None


# Only SMTP is supported; other transport types would join this alias.
TransportConfig = SMTPTransport


def _format_validation_error(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    )


def load_transports(config_path: Path) -> dict[str, TransportConfig]:
    """
    Load and validate every transport in a transports.json file.

    The file is a JSON object mapping transport names to transport settings.
    All invalid entries are reported together in one ConfigError.
    """
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"Transport config not found: {config_path}") from None
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read transport config {config_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid transport config {config_path}: top-level value must be an object")

    transports: dict[str, TransportConfig] = {}
    errors: list[str] = []
    for name, entry in raw.items():
        try:
            transports[name] = TransportConfig.model_validate(entry)
        except ValidationError as exc:
            errors.append(f"{name}: {_format_validation_error(exc)}")

    if errors:
        rendered = "\n  - ".join(errors)
        raise ConfigError(f"Invalid transport config entries:\n  - {rendered}")

    return transports


def get_transport(config_path: Path, name: str) -> TransportConfig:
    """Load one named transport."""
    transports = load_transports(config_path)
    if name not in transports:
        known = ", ".join(sorted(transports)) or "none"
        raise ConfigError(f"Unknown transport '{name}' (configured: {known})")
    return transports[name]


class FeedEntry(BaseModel):
    """Validated feed entry from feeds.yaml."""

    model_config = ConfigDict(extra="forbid")

    url: HttpUrl = Field(..., description="RSS/Atom feed URL")
    directory: Path | None = Field(default=None, description="State directory override")
    to: str | None = Field(default=None, description="Recipient address")
    transport: str | None = Field(default=None, description="Transport name")
    mode: SendMode | None = Field(default=None)
    order: Literal["date"] | None = Field(default=None)
    reverse: bool = False
    max: int | None = Field(default=None, ge=1)
    before: datetime | None = None
    after: datetime | None = None


class FeedConfig:
    """Configuration for the feeds synced by `rss2epub run`."""

    def __init__(self, config_path: Path):
        self.config_path = config_path
        self._feeds: dict[str, FeedEntry] = {}
        self._load()

    def _load(self) -> None:
        """Load feeds from YAML file."""
        if not self.config_path.exists():
            self._feeds = {}
            return

        try:
            with open(self.config_path, encoding="utf-8") as file_handle:
                data = yaml.safe_load(file_handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid feeds file {self.config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ConfigError("Invalid feeds.yaml: top-level structure must be a mapping")

        raw_feeds = data.get("feeds", {})
        if raw_feeds is None:
            self._feeds = {}
            return
        if not isinstance(raw_feeds, dict):
            raise ConfigError("Invalid feeds.yaml: 'feeds' must be a mapping")

        validated_feeds: dict[str, FeedEntry] = {}
        validation_errors: list[str] = []
        url_to_names: dict[str, list[str]] = {}

        for raw_name, raw_feed in raw_feeds.items():
            feed_name = str(raw_name).strip()
            if not feed_name:
                validation_errors.append("Feed name cannot be empty")
                continue
            if not isinstance(raw_feed, dict):
                validation_errors.append(f"{feed_name}: feed configuration must be a mapping")
                continue

            try:
                parsed = FeedEntry.model_validate(raw_feed)
            except ValidationError as exc:
                validation_errors.append(f"{feed_name}: {_format_validation_error(exc)}")
                continue

            validated_feeds[feed_name] = parsed
            url_to_names.setdefault(str(parsed.url), []).append(feed_name)

        duplicate_url_errors = [
            f"Duplicate feed URL {url}: {', '.join(names)}"
            for url, names in url_to_names.items()
            if len(names) > 1
        ]
        validation_errors.extend(duplicate_url_errors)

        if validation_errors:
            rendered = "\n  - ".join(validation_errors)
            raise ConfigError(f"Invalid feeds.yaml entries:\n  - {rendered}")

        self._feeds = validated_feeds

    @property
    def feeds(self) -> dict[str, FeedEntry]:
        """Get all configured feeds."""
        return self._feeds

    def state_dir(self, feed_name: str, data_dir: Path) -> Path:
        """State directory for a feed: its override, or a folder under data_dir."""
        entry = self._feeds[feed_name]
        if entry.directory is not None:
            return entry.directory.expanduser()
        return data_dir / feed_name


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get application settings (singleton)."""
    global _settings
    if _settings is None:
        try:
            _settings = Settings()
        except ValidationError as exc:
            raise ConfigError(f"Invalid settings: {_format_validation_error(exc)}") from exc
    return _settings
