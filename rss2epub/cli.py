"""
rss2epub CLI.

Usage:
    rss2epub sync FEED_URL                      # Cache new articles from a feed
    rss2epub send FEED_URL --to ADDR            # Mail unsent cached articles
    rss2epub send FEED_URL --mode individual    # One EPUB per article
    rss2epub build URL... --out book.epub       # One-off EPUB from articles/feeds
    rss2epub run                                # Sync and send every configured feed
    rss2epub status FEED_URL [--json]           # Cache and ledger summary
    rss2epub config                             # Verify configuration
"""

import json
import re
from datetime import datetime
from pathlib import Path

import typer
from dateutil.parser import ParserError
from dateutil.parser import parse as parse_date
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from rss2epub import __version__
from rss2epub.compile import (
    SendReport,
    build_from_articles,
    collect_articles,
    send_unsent,
)
from rss2epub.compile.selection import SelectionOptions, build_selection_options, select_unsent
from rss2epub.config import (
    XDG_CONFIG_PATH,
    FeedConfig,
    Settings,
    get_settings,
    get_transport,
    load_transports,
)
from rss2epub.deliver import Attachment, EmailSender
from rss2epub.errors import ConfigError, Rss2EpubError
from rss2epub.ingest import ArticleExtractor, SyncResult, reconcile
from rss2epub.ingest.feeds import fetch_feed
from rss2epub.logging_config import setup_logging
from rss2epub.models import SendStatus
from rss2epub.storage.state import StateStore

console = Console()

DEFAULT_OUT_PATH = Path("/tmp/rss2epub.epub")

# Global state
state = {"verbose": False}


def _load_settings() -> Settings:
    """Load settings with a user-friendly error on failure."""
    try:
        return get_settings()
    except ConfigError as e:
        console.print(f"[red]Configuration error.[/red] {e}")
        console.print("\n[dim]Run 'rss2epub config' to verify.[/dim]")
        raise typer.Exit(code=1) from None


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]✗ {message}[/red]")
    return typer.Exit(code=1)


def _feed_slug(feed_url: str) -> str:
    """Directory name for a feed's state: host and path, filesystem safe."""
    slug = re.sub(r"^[a-z]+://", "", feed_url.lower())
    slug = re.sub(r"[^a-z0-9]+", "-", slug).strip("-")
    return slug[:80] or "feed"


def _state_dir(settings: Settings, feed_url: str, directory: Path | None) -> Path:
    if directory is not None:
        return directory.expanduser()
    return settings.data_dir / _feed_slug(feed_url)


def _parse_when(value: str | None, option: str) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_date(value)
    except (ParserError, ValueError, OverflowError):
        raise _fail(f"bad parameter {option}: {value!r} is not a date") from None


def _selection_options(
    order: str | None,
    before: str | None,
    after: str | None,
    reverse: bool,
    max_count: int | None,
) -> SelectionOptions:
    try:
        return build_selection_options(
            order_by=order,
            before=_parse_when(before, "--before"),
            after=_parse_when(after, "--after"),
            reverse=reverse,
            max=max_count,
        )
    except ConfigError as e:
        raise _fail(str(e)) from None


def _build_sender(settings: Settings, transport: str | None, transport_config: Path | None) -> EmailSender:
    name = transport or settings.transport
    if not name:
        raise _fail("transport must be specified to send email (--transport)")
    config_path = (transport_config or settings.transport_config).expanduser()
    try:
        return EmailSender(get_transport(config_path, name))
    except ConfigError as e:
        raise _fail(str(e)) from None


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"rss2epub v{__version__}")
        raise typer.Exit()


app = typer.Typer(
    name="rss2epub",
    help="rss2epub - Turn articles and feeds into EPUBs and mail them",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="markdown",
)

OrderOption = typer.Option(None, "--order", help="Sort articles: date")
BeforeOption = typer.Option(None, "--before", help="Only articles published before this date")
AfterOption = typer.Option(None, "--after", help="Only articles published after this date")
ReverseOption = typer.Option(False, "--reverse", help="Reverse the article order")
MaxOption = typer.Option(None, "--max", min=1, help="Include at most this many articles")
ToOption = typer.Option(None, "--to", help="Recipient email address")
TransportOption = typer.Option(None, "--transport", help="Transport name in the transport config")
TransportConfigOption = typer.Option(
    None, "--transport-config", help="Path to transports.json"
)
DirOption = typer.Option(None, "--dir", "-d", help="State directory for this feed")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging output."
    ),
    version: bool | None = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit."
    ),
):
    """
    rss2epub - Turn articles and feeds into EPUBs and mail them
    """
    state["verbose"] = verbose
    if verbose:
        setup_logging("DEBUG")
    else:
        try:
            setup_logging(get_settings().log_level)
        except ConfigError:
            setup_logging("INFO")


def _print_sync_result(result: SyncResult) -> None:
    table = Table(title=f"Sync: {result.feed_title}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Entries in feed", str(len(result.ids_in_feed)))
    table.add_row("New articles", str(len(result.new_ids)))
    table.add_row("Removed from feed", str(len(result.deleted_ids)))
    table.add_row("Restored", str(len(result.revived_ids)))
    table.add_row("Skipped (no link)", str(result.skipped))
    table.add_row("Failed", str(len(result.errors)))
    table.add_row("Duration", f"{result.duration_seconds:.1f}s")
    console.print(table)

    if result.errors:
        console.print("\n[yellow]Article failures:[/yellow]")
        for error in result.errors[:10]:
            console.print(f"  • {error}")
        if len(result.errors) > 10:
            console.print(f"  ... and {len(result.errors) - 10} more")


def _print_send_report(report: SendReport) -> None:
    if not report.selected:
        console.print(f"[dim]No unsent articles for {report.recipient}[/dim]")
        return

    console.print(
        f"  ✓ Sent {len(report.sent)} of {len(report.selected)} article(s) "
        f"to {report.recipient} ({report.mode})"
    )
    for error in report.errors:
        console.print(f"  [yellow]⚠ {error}[/yellow]")


def _run_sync(settings: Settings, feed_url: str, directory: Path) -> SyncResult:
    extractor = ArticleExtractor(timeout=settings.request_timeout, user_agent=settings.user_agent)
    with StateStore(directory) as store:
        return reconcile(
            feed_url,
            store.articles,
            extractor,
            fetcher=lambda url: fetch_feed(
                url, timeout=settings.request_timeout, user_agent=settings.user_agent
            ),
        )


@app.command()
def sync(
    feed_url: str = typer.Argument(..., help="RSS/Atom feed URL"),
    directory: Path | None = DirOption,
) -> None:
    """Cache new articles from a feed and tombstone removed ones."""
    settings = _load_settings()
    state_dir = _state_dir(settings, feed_url, directory)

    console.print(f"[bold]Syncing {feed_url}[/bold] [dim]→ {state_dir}[/dim]")
    try:
        result = _run_sync(settings, feed_url, state_dir)
    except Rss2EpubError as e:
        raise _fail(f"Sync failed: {e}") from None

    _print_sync_result(result)


@app.command()
def send(
    feed_url: str = typer.Argument(..., help="RSS/Atom feed URL whose cache to send from"),
    directory: Path | None = DirOption,
    to: str | None = ToOption,
    transport: str | None = TransportOption,
    transport_config: Path | None = TransportConfigOption,
    mode: str | None = typer.Option(None, "--mode", help="individual or bundle"),
    order: str | None = OrderOption,
    before: str | None = BeforeOption,
    after: str | None = AfterOption,
    reverse: bool = ReverseOption,
    max_count: int | None = MaxOption,
) -> None:
    """Mail cached articles that have not been sent to the recipient yet."""
    settings = _load_settings()
    recipient = to or settings.email_to
    if not recipient:
        raise _fail("recipient must be specified (--to)")

    send_mode = mode or settings.default_mode
    if send_mode not in ("individual", "bundle"):
        raise _fail(f"bad parameter --mode: {send_mode!r} (expected individual or bundle)")

    options = _selection_options(order, before, after, reverse, max_count)
    sender = _build_sender(settings, transport, transport_config)
    state_dir = _state_dir(settings, feed_url, directory)

    try:
        with StateStore(state_dir) as store:
            report = send_unsent(store, sender, recipient, send_mode, options)
    except Rss2EpubError as e:
        raise _fail(f"Send failed: {e}") from None

    _print_send_report(report)
    if report.failed:
        raise typer.Exit(code=1)


@app.command()
def build(
    urls: list[str] = typer.Argument(..., help="Article or feed URLs"),
    out: Path | None = typer.Option(DEFAULT_OUT_PATH, "--out", "-o", help="Where to write the EPUB"),
    title: str | None = typer.Option(None, "--title", help="Book title"),
    to: str | None = ToOption,
    transport: str | None = TransportOption,
    transport_config: Path | None = TransportConfigOption,
    order: str | None = OrderOption,
    before: str | None = BeforeOption,
    after: str | None = AfterOption,
    reverse: bool = ReverseOption,
    max_count: int | None = MaxOption,
) -> None:
    """Build one EPUB from article and feed URLs, without using the cache."""
    settings = _load_settings()
    options = _selection_options(order, before, after, reverse, max_count)

    # Check mail parameters before doing any work.
    sender = _build_sender(settings, transport, transport_config) if to else None

    extractor = ArticleExtractor(timeout=settings.request_timeout, user_agent=settings.user_agent)
    try:
        articles = collect_articles(
            urls,
            extractor,
            options,
            timeout=settings.request_timeout,
            user_agent=settings.user_agent,
        )
    except Rss2EpubError as e:
        raise _fail(f"Build failed: {e}") from None

    if not articles:
        raise _fail("No articles found")

    book = build_from_articles(articles, title=title)

    if out:
        out = out.expanduser()
        out.write_bytes(book.data)
        console.print(f"[green]✓[/green] Wrote {out} ({len(articles)} article(s))")

    if sender is not None and to:
        try:
            sender.send(
                to,
                f"rss2epub: {book.title}",
                Attachment(filename=book.filename, data=book.data),
            )
        except Rss2EpubError as e:
            raise _fail(str(e)) from None
        console.print(f"[green]✓[/green] Sent to {to}")


@app.command()
def run(
    name: str | None = typer.Option(None, "--name", help="Only this configured feed"),
) -> None:
    """Sync and send every feed in feeds.yaml."""
    settings = _load_settings()
    try:
        feed_config = FeedConfig(settings.feeds_file)
    except ConfigError as e:
        raise _fail(str(e)) from None

    feeds = feed_config.feeds
    if not feeds:
        raise _fail(f"No feeds configured in {settings.feeds_file}")
    if name is not None:
        if name not in feeds:
            raise _fail(f"Feed '{name}' not found in {settings.feeds_file}")
        feeds = {name: feeds[name]}

    failures: list[str] = []
    for feed_name, entry in feeds.items():
        feed_url = str(entry.url)
        state_dir = feed_config.state_dir(feed_name, settings.data_dir)
        console.print(Panel.fit(f"[bold]{feed_name}[/bold]\n{feed_url}", border_style="blue"))

        recipient = entry.to or settings.email_to
        try:
            result = _run_sync(settings, feed_url, state_dir)
            console.print(
                f"  ✓ {len(result.new_ids)} new, {len(result.deleted_ids)} removed, "
                f"{len(result.errors)} failed"
            )

            if not recipient:
                console.print("  [dim]No recipient configured, not sending[/dim]")
                continue

            transport_name = entry.transport or settings.transport
            if not transport_name:
                raise ConfigError("transport must be specified to send email")
            sender = EmailSender(get_transport(settings.transport_config, transport_name))
            options = build_selection_options(
                before=entry.before,
                after=entry.after,
                order_by=entry.order,
                reverse=entry.reverse,
                max=entry.max,
            )
            with StateStore(state_dir) as store:
                report = send_unsent(
                    store, sender, recipient, entry.mode or settings.default_mode, options
                )
        except Rss2EpubError as e:
            console.print(f"  [red]✗ {e}[/red]")
            failures.append(f"{feed_name}: {e}")
            continue

        _print_send_report(report)
        failures.extend(f"{feed_name}: {error}" for error in report.errors)

    if failures:
        console.print("\n[red]Failures:[/red]")
        for failure in failures:
            console.print(f"  • {failure}")
        raise typer.Exit(code=1)

    console.print(Panel.fit("[bold green]✓ Complete[/bold green]", border_style="green"))


@app.command()
def status(
    feed_url: str = typer.Argument(..., help="RSS/Atom feed URL"),
    directory: Path | None = DirOption,
    json_format: bool = typer.Option(False, "--json", help="Output status as JSON"),
) -> None:
    """Show cached articles and send history for a feed."""
    settings = _load_settings()
    state_dir = _state_dir(settings, feed_url, directory)

    try:
        with StateStore(state_dir, read_only=True) as store:
            records = store.articles.records(include_deleted=True)
            entries = store.ledger.entries
            unsent = {
                recipient: len(select_unsent(store.articles, store.ledger, recipient))
                for recipient in store.ledger.recipients()
            }
    except Rss2EpubError as e:
        raise _fail(str(e)) from None

    deleted = sum(1 for record in records if record.deleted)
    data = {
        "directory": str(state_dir),
        "articles": {"total": len(records), "active": len(records) - deleted, "deleted": deleted},
        "emails": {
            send_status.value: sum(1 for entry in entries if entry.status is send_status)
            for send_status in SendStatus
        },
        "unsent_by_recipient": unsent,
        "recent_emails": [
            {
                "sentAt": entry.sent_at.isoformat(),
                "sentTo": entry.recipient,
                "articles": len(entry.article_ids),
                "status": entry.status.value,
            }
            for entry in entries[-5:]
        ],
    }

    if json_format:
        print(json.dumps(data, indent=2))
        return

    article_table = Table(title="Articles")
    article_table.add_column("State", style="cyan")
    article_table.add_column("Count", style="green")
    article_table.add_row("Active", str(data["articles"]["active"]))
    article_table.add_row("Deleted", str(deleted))
    article_table.add_row("[bold]Total[/bold]", f"[bold]{len(records)}[/bold]")
    console.print(article_table)

    if unsent:
        unsent_table = Table(title="\nUnsent by Recipient")
        unsent_table.add_column("Recipient", style="white")
        unsent_table.add_column("Unsent", style="green")
        for recipient, count in unsent.items():
            unsent_table.add_row(recipient, str(count))
        console.print(unsent_table)

    if entries:
        recent_table = Table(title="\nRecent Emails")
        recent_table.add_column("Sent At", style="dim")
        recent_table.add_column("To", style="white")
        recent_table.add_column("Articles", style="green")
        recent_table.add_column("Status", style="cyan")
        for row in data["recent_emails"]:
            recent_table.add_row(row["sentAt"], row["sentTo"], str(row["articles"]), row["status"])
        console.print(recent_table)

    console.print(f"\n[dim]State: {state_dir}[/dim]")


@app.command()
def config() -> None:
    """Verify configuration and show settings."""
    console.print("[bold]Verifying configuration...[/bold]\n")

    # Show config file locations
    console.print("[dim]Config search paths:[/dim]")
    xdg_config = XDG_CONFIG_PATH / "config.env"
    xdg_status = "[green](exists)[/green]" if xdg_config.exists() else "[dim](not found)[/dim]"
    console.print(f"  1. {xdg_config} {xdg_status}")
    local_env = Path(".env")
    local_status = "[green](exists)[/green]" if local_env.exists() else "[dim](not found)[/dim]"
    console.print(f"  2. {local_env.absolute()} {local_status}")
    console.print()

    errors = []
    settings = None

    try:
        settings = get_settings()
        console.print("[green]✓[/green] Settings loaded")
        console.print(f"  Data dir: {settings.data_dir}")
        console.print(f"  Default recipient: {settings.email_to or '-'}")
        console.print(f"  Default transport: {settings.transport or '-'}")
        console.print(f"  Default mode: {settings.default_mode}")
    except ConfigError as e:
        errors.append(str(e))

    console.print()
    if settings is not None:
        try:
            transports = load_transports(settings.transport_config)
            console.print(f"[green]✓[/green] Transports configured: {len(transports)}")
            for transport_name, transport in transports.items():
                console.print(f"  • {transport_name}: {transport.host}:{transport.port}")
            if settings.transport and settings.transport not in transports:
                errors.append(f"Default transport '{settings.transport}' is not configured")
        except ConfigError as e:
            errors.append(f"Transport config error: {e}")

        console.print()
        try:
            feeds = FeedConfig(settings.feeds_file).feeds
            if feeds:
                console.print(f"[green]✓[/green] Feeds configured: {len(feeds)}")
                for feed_name, entry in list(feeds.items())[:5]:
                    console.print(f"  • {feed_name}: {entry.url}")
                if len(feeds) > 5:
                    console.print(f"  ... and {len(feeds) - 5} more")
            else:
                console.print(f"[dim]No feeds configured in {settings.feeds_file}[/dim]")
        except ConfigError as e:
            errors.append(f"Feeds config error: {e}")
    else:
        console.print(
            "[yellow]⚠ Skipping transport and feed checks (settings not loaded)[/yellow]"
        )

    console.print()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  [red]✗[/red] {error}")
        raise typer.Exit(code=1)

    console.print("[green]✓ Configuration valid[/green]")


def cli() -> None:
    """Entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[dim]Aborted.[/dim]")
        raise SystemExit(130) from None
    except Exception as e:
        console.print(f"\n[red]Unexpected error:[/red] {e}")
        console.print("[dim]Run with --verbose for more details.[/dim]")
        raise SystemExit(1) from e


if __name__ == "__main__":
    cli()
