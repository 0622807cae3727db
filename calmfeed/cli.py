"""Command-line interface for CalmFeed."""

import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from calmfeed.backlog import BacklogScheduler
from calmfeed.cache import ResponseCache
from calmfeed.config import Config
from calmfeed.errors import CalmFeedError
from calmfeed.feed import FeedService
from calmfeed.ingestion import IngestionOrchestrator
from calmfeed.interactions import InteractionService
from calmfeed.models import FilterKeyword, InteractionType, Preferences, utcnow
from calmfeed.sources import AdapterRegistry, create_registry
from calmfeed.store import Store
from calmfeed.subscriptions import SourceService


console = Console()

DEFAULT_USER = "default"


@dataclass
class Services:
    """Everything a command needs, wired from one config."""
    config: Config
    store: Store
    cache: ResponseCache | None
    registry: AdapterRegistry
    sources: SourceService
    feed: FeedService
    interactions: InteractionService
    orchestrator: IngestionOrchestrator


@contextmanager
def open_services(config: Config) -> Iterator[Services]:
    cache = config.create_cache()
    registry = create_registry(config, cache)
    try:
        with config.create_store() as store:
            feed_service = FeedService(store, cache=cache, settings=config.feed)
            yield Services(
                config=config,
                store=store,
                cache=cache,
                registry=registry,
                sources=SourceService(store, registry),
                feed=feed_service,
                interactions=InteractionService(store, feed_service),
                orchestrator=IngestionOrchestrator(store, registry, config.ingestion),
            )
    finally:
        registry.close()
        if cache is not None:
            cache.close()


@contextmanager
def services(ctx: click.Context) -> Iterator[Services]:
    """Open services for a command; CalmFeed errors print in red and exit 1."""
    try:
        with open_services(ctx.obj["config"]) as svc:
            yield svc
    except CalmFeedError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


def format_age(dt: datetime | None) -> str:
    """Format a datetime as a human-readable age."""
    if dt is None:
        return "never"
    seconds = (utcnow() - dt).total_seconds()

    if seconds < 60:
        return "now"
    elif seconds < 3600:
        return f"{int(seconds / 60)}m"
    elif seconds < 86400:
        return f"{int(seconds / 3600)}h"
    elif seconds < 604800:
        return f"{int(seconds / 86400)}d"
    else:
        return f"{int(seconds / 604800)}w"


def format_duration(seconds: int | None) -> str:
    if seconds is None:
        return "-"
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


@click.group()
@click.version_option(package_name="calmfeed")
@click.option(
    "--user", "user_id",
    default=DEFAULT_USER,
    envvar="CALMFEED_USER",
    show_default=True,
    help="User whose sources and feed to act on.",
)
@click.option(
    "--config", "config_path",
    default=None,
    help="Path to config.json (defaults to $CALMFEED_CONFIG or ~/.calmfeed/config.json).",
)
@click.option(
    "--log-level",
    default=lambda: os.environ.get("CALMFEED_LOG_LEVEL", "WARNING"),
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity.",
)
@click.pass_context
def main(ctx: click.Context, user_id: str, config_path: str | None, log_level: str) -> None:
    """CalmFeed - a calm, bounded feed of the channels you follow."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["user_id"] = user_id
    ctx.obj["config"] = Config.load(config_path)


# =============================================================================
# Sources commands
# =============================================================================


@main.group()
def sources() -> None:
    """Manage content sources."""
    pass


@sources.command("add")
@click.argument("source_type", type=click.Choice(["youtube", "rss"], case_sensitive=False))
@click.argument("identifier")
@click.option("--fetch/--no-fetch", default=True, help="Fetch content right away.")
@click.pass_context
def sources_add(ctx: click.Context, source_type: str, identifier: str, fetch: bool) -> None:
    """Add a source: a YouTube channel (@handle, URL or id) or a feed URL."""
    user_id = ctx.obj["user_id"]
    console.print(f"[dim]Validating {identifier}...[/dim]")

    with services(ctx) as svc:
        source = svc.sources.add_source(user_id, source_type, identifier)
        console.print(f"[green]Added source: {source.display_name} ({source.id})[/green]")

        if fetch:
            _fetch_one(svc, source.id, force_backlog=True)


@sources.command("list")
@click.pass_context
def sources_list(ctx: click.Context) -> None:
    """List all sources."""
    with services(ctx) as svc:
        sources_list = svc.sources.list_sources(ctx.obj["user_id"])

        if not sources_list:
            console.print(
                "[dim]No sources configured. Use 'calmfeed sources add <type> <id>' to add one.[/dim]"
            )
            return

        table = Table(show_header=True)
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Last Fetched")
        table.add_column("Items", justify="right")
        table.add_column("Backlog")

        for source in sources_list:
            item_count = svc.store.count_items(source.source_type, source.source_id)

            status_color = {
                "success": "green",
                "error": "red",
            }.get(source.last_fetch_status.value, "yellow")
            status = f"[{status_color}]{source.last_fetch_status.value}[/{status_color}]"
            if source.is_muted:
                status += " [dim](muted)[/dim]"

            backlog = "done" if source.backlog_complete else f"{source.backlog_video_count}+"

            table.add_row(
                source.id,
                source.display_name,
                source.source_type.value.lower(),
                status,
                format_age(source.last_fetch_at),
                str(item_count),
                backlog,
            )

        console.print(table)


@sources.command("fetch")
@click.argument("source_id")
@click.option("--backlog", "force_backlog", is_flag=True, help="Also fetch a backlog page.")
@click.pass_context
def sources_fetch(ctx: click.Context, source_id: str, force_backlog: bool) -> None:
    """Fetch one source now."""
    with services(ctx) as svc:
        svc.sources.get_source(ctx.obj["user_id"], source_id)
        _fetch_one(svc, source_id, force_backlog)


def _fetch_one(svc: Services, source_id: str, force_backlog: bool) -> None:
    source = svc.store.get_source(source_id)
    console.print(f"[dim]Fetching {source.display_name}...[/dim]")
    try:
        new_count = svc.orchestrator.fetch_source(source_id, force_backlog=force_backlog)
    except CalmFeedError as e:
        console.print(f"[red]Failed to fetch: {e}[/red]")
        sys.exit(1)
    svc.feed.refresh_feed(source.user_id)
    console.print(f"[green]Added {new_count} new items from {source.display_name}[/green]")


@sources.command("mute")
@click.argument("source_id")
@click.pass_context
def sources_mute(ctx: click.Context, source_id: str) -> None:
    """Mute a source (kept, but not fetched or shown)."""
    with services(ctx) as svc:
        source = svc.sources.set_muted(ctx.obj["user_id"], source_id, True)
        svc.feed.refresh_feed(source.user_id)
        console.print(f"[yellow]Muted: {source.display_name}[/yellow]")


@sources.command("unmute")
@click.argument("source_id")
@click.pass_context
def sources_unmute(ctx: click.Context, source_id: str) -> None:
    """Unmute a source."""
    with services(ctx) as svc:
        source = svc.sources.set_muted(ctx.obj["user_id"], source_id, False)
        svc.feed.refresh_feed(source.user_id)
        console.print(f"[green]Unmuted: {source.display_name}[/green]")


@sources.command("safe")
@click.argument("source_id")
@click.option("--off", is_flag=True, help="Apply filters to this source again.")
@click.pass_context
def sources_safe(ctx: click.Context, source_id: str, off: bool) -> None:
    """Exempt a source from keyword and duration filters."""
    with services(ctx) as svc:
        source = svc.sources.set_always_safe(ctx.obj["user_id"], source_id, not off)
        svc.feed.refresh_feed(source.user_id)
        state = "filtered again" if off else "always safe"
        console.print(f"[green]{source.display_name} is {state}[/green]")


@sources.command("remove")
@click.argument("source_id")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def sources_remove(ctx: click.Context, source_id: str, yes: bool) -> None:
    """Remove a source."""
    user_id = ctx.obj["user_id"]
    with services(ctx) as svc:
        source = svc.sources.get_source(user_id, source_id)
        if not yes and not click.confirm(f"Remove {source.display_name}?", default=False):
            console.print("[dim]Cancelled.[/dim]")
            return
        svc.sources.remove_source(user_id, source_id)
        svc.feed.refresh_feed(user_id)
        console.print(f"[yellow]Removed source: {source.display_name}[/yellow]")


# =============================================================================
# Ingestion commands
# =============================================================================


@main.command("fetch")
@click.option("--all-users", is_flag=True, help="Fetch every user's sources.")
@click.pass_context
def fetch(ctx: click.Context, all_users: bool) -> None:
    """Fetch all unmuted sources, one at a time."""
    user_id = None if all_users else ctx.obj["user_id"]
    with services(ctx) as svc:
        with console.status("Fetching sources..."):
            stats = svc.orchestrator.fetch_all_sources(user_id=user_id)

        if stats.total_sources == 0:
            console.print("[dim]No sources to fetch.[/dim]")
            return

        if user_id is not None:
            svc.feed.refresh_feed(user_id)

        console.print(
            f"[green]Fetched {stats.success_count}/{stats.total_sources} sources, "
            f"{stats.new_items_count} new items[/green] [dim]({stats.duration_ms}ms)[/dim]"
        )
        for source_id, message in stats.errors:
            console.print(f"[red]{source_id}: {message}[/red]")


@main.command("backlog")
@click.option("--limit", type=int, default=None, help="Max sources this pass.")
@click.pass_context
def backlog(ctx: click.Context, limit: int | None) -> None:
    """Fetch one backlog page for sources that are due."""
    with services(ctx) as svc:
        scheduler = BacklogScheduler(svc.orchestrator, svc.config.ingestion)
        with console.status("Fetching backlog..."):
            result = scheduler.run(force=True, limit=limit)

        if result is None or result.processed == 0:
            console.print("[dim]No sources need backlog fetching.[/dim]")
            return

        table = Table(show_header=True)
        table.add_column("Source")
        table.add_column("Fetched", justify="right")
        table.add_column("Total", justify="right")
        table.add_column("Status")

        for entry in result.results:
            if entry.error:
                status = f"[red]{entry.error}[/red]"
            elif entry.complete:
                status = "[green]complete[/green]"
            else:
                status = "[dim]more to go[/dim]"
            table.add_row(entry.display_name, str(entry.fetched), str(entry.total), status)

        console.print(table)
        console.print(
            f"[green]{result.total_fetched} new items from {result.processed} sources, "
            f"{result.completed} completed[/green]"
        )


# =============================================================================
# Feed commands
# =============================================================================


@main.command("feed")
@click.option("--limit", default=20, help="Number of items to show.")
@click.option("--fresh", is_flag=True, help="Ignore the cached feed.")
@click.pass_context
def feed(ctx: click.Context, limit: int, fresh: bool) -> None:
    """Show the feed."""
    with services(ctx) as svc:
        items = svc.feed.get_user_feed(ctx.obj["user_id"], use_cache=not fresh)

        if not items:
            console.print("[dim]Nothing in your feed. Add sources and fetch them.[/dim]")
            return

        table = Table(show_header=True, show_lines=False)
        table.add_column("#", style="dim", width=3)
        table.add_column("Age", width=4)
        table.add_column("Len", width=8, justify="right")
        table.add_column("Source", width=20, no_wrap=True)
        table.add_column("Title")
        table.add_column("ID", style="dim")

        for feed_item in items[:limit]:
            item = feed_item.content
            title = item.title
            if len(title) > 60:
                title = title[:57] + "..."
            if feed_item.is_returning:
                title = f"[magenta]↺[/magenta] {title}"
            elif feed_item.is_new:
                title = f"[cyan]•[/cyan] {title}"

            table.add_row(
                str(feed_item.position + 1),
                format_age(item.published_at),
                format_duration(item.duration),
                feed_item.source_display_name[:20],
                title,
                item.id,
            )

        console.print(table)
        console.print(f"[dim]{len(items)} items in feed[/dim]")


# =============================================================================
# Interaction commands
# =============================================================================


@main.command("watch")
@click.argument("content_id")
@click.option("--seconds", "watch_duration", type=int, default=None, help="Time watched.")
@click.option("--completion", type=click.FloatRange(0.0, 1.0), default=None, help="0.0-1.0")
@click.pass_context
def watch(
    ctx: click.Context, content_id: str, watch_duration: int | None, completion: float | None
) -> None:
    """Mark an item as watched."""
    with services(ctx) as svc:
        svc.interactions.record_watch(ctx.obj["user_id"], content_id, watch_duration, completion)
        console.print(f"[green]Watched: {svc.store.get_item(content_id).title}[/green]")


@main.command("save")
@click.argument("content_id")
@click.option("--collection", default=None, help="Collection to save into.")
@click.pass_context
def save(ctx: click.Context, content_id: str, collection: str | None) -> None:
    """Save an item for later (removes it from the feed)."""
    with services(ctx) as svc:
        svc.interactions.save_content(ctx.obj["user_id"], content_id, collection)
        console.print(f"[green]Saved: {svc.store.get_item(content_id).title}[/green]")


@main.command("dismiss")
@click.argument("content_id")
@click.option("--reason", default=None)
@click.pass_context
def dismiss(ctx: click.Context, content_id: str, reason: str | None) -> None:
    """Dismiss an item for good."""
    with services(ctx) as svc:
        svc.interactions.dismiss_content(ctx.obj["user_id"], content_id, reason)
        console.print(f"[yellow]Dismissed: {svc.store.get_item(content_id).title}[/yellow]")


@main.command("not-now")
@click.argument("content_id")
@click.pass_context
def not_now(ctx: click.Context, content_id: str) -> None:
    """Defer an item; it may come back later."""
    with services(ctx) as svc:
        svc.interactions.not_now(ctx.obj["user_id"], content_id)
        console.print(f"[dim]Not now: {svc.store.get_item(content_id).title}[/dim]")


@main.command("block")
@click.argument("content_id")
@click.option("--keywords", "extract", is_flag=True, help="Also filter words from its title.")
@click.pass_context
def block(ctx: click.Context, content_id: str, extract: bool) -> None:
    """Block an item."""
    with services(ctx) as svc:
        keywords = svc.interactions.block_content(ctx.obj["user_id"], content_id, extract)
        console.print(f"[yellow]Blocked: {svc.store.get_item(content_id).title}[/yellow]")
        if keywords:
            console.print(f"[dim]Now filtering: {', '.join(keywords)}[/dim]")


@main.command("history")
@click.option(
    "--type", "type_",
    type=click.Choice([t.value for t in InteractionType], case_sensitive=False),
    default=None,
)
@click.option("--limit", default=50)
@click.pass_context
def history(ctx: click.Context, type_: str | None, limit: int) -> None:
    """Show recent interactions."""
    interaction_type = InteractionType(type_.upper()) if type_ else None
    with services(ctx) as svc:
        interactions = svc.interactions.get_history(ctx.obj["user_id"], interaction_type, limit)
        if not interactions:
            console.print("[dim]No interactions yet.[/dim]")
            return

        table = Table(show_header=True)
        table.add_column("When", width=5)
        table.add_column("Type")
        table.add_column("Title")

        for interaction in interactions:
            item = svc.store.get_item(interaction.content_id)
            table.add_row(
                format_age(interaction.timestamp),
                interaction.type.value,
                item.title if item else f"[dim]{interaction.content_id}[/dim]",
            )
        console.print(table)


# =============================================================================
# Filter commands
# =============================================================================


@main.group()
def filters() -> None:
    """Manage keyword filters."""
    pass


@filters.command("add")
@click.argument("keyword")
@click.option("--wildcard", is_flag=True, help="Match anywhere in a word, not whole words.")
@click.pass_context
def filters_add(ctx: click.Context, keyword: str, wildcard: bool) -> None:
    """Hide items whose title or description mention KEYWORD."""
    user_id = ctx.obj["user_id"]
    with services(ctx) as svc:
        added = svc.store.add_filter_keyword(FilterKeyword(
            id="",
            user_id=user_id,
            keyword=keyword.strip(),
            is_wildcard=wildcard or "*" in keyword,
        ))
        svc.feed.refresh_feed(user_id)
        console.print(f"[green]Filtering: {added.keyword} ({added.id})[/green]")


@filters.command("list")
@click.pass_context
def filters_list(ctx: click.Context) -> None:
    """List keyword filters."""
    with services(ctx) as svc:
        keywords = svc.store.list_filter_keywords(ctx.obj["user_id"])
        if not keywords:
            console.print("[dim]No filters configured.[/dim]")
            return

        table = Table(show_header=True)
        table.add_column("ID", style="dim")
        table.add_column("Keyword")
        table.add_column("Match")
        for kw in keywords:
            table.add_row(kw.id, kw.keyword, "wildcard" if kw.is_wildcard else "whole word")
        console.print(table)


@filters.command("remove")
@click.argument("keyword_id")
@click.pass_context
def filters_remove(ctx: click.Context, keyword_id: str) -> None:
    """Remove a keyword filter."""
    user_id = ctx.obj["user_id"]
    with services(ctx) as svc:
        if not svc.store.delete_filter_keyword(user_id, keyword_id):
            console.print(f"[red]Filter not found: {keyword_id}[/red]")
            sys.exit(1)
        svc.feed.refresh_feed(user_id)
        console.print(f"[yellow]Removed filter {keyword_id}[/yellow]")


# =============================================================================
# Preferences
# =============================================================================


@main.command("prefs")
@click.option("--backlog-ratio", type=click.FloatRange(0.0, 1.0), default=None)
@click.option("--max-consecutive", type=click.IntRange(min=1), default=None)
@click.option("--min-duration", type=click.IntRange(min=0), default=None, help="Seconds.")
@click.option("--max-duration", type=click.IntRange(min=0), default=None, help="Seconds.")
@click.option("--clear-durations", is_flag=True, help="Remove the duration range.")
@click.pass_context
def prefs(
    ctx: click.Context,
    backlog_ratio: float | None,
    max_consecutive: int | None,
    min_duration: int | None,
    max_duration: int | None,
    clear_durations: bool,
) -> None:
    """Show or update feed preferences."""
    user_id = ctx.obj["user_id"]
    with services(ctx) as svc:
        preferences = svc.store.get_preferences(user_id) or Preferences.defaults(
            user_id, svc.config.feed
        )

        changed = False
        if backlog_ratio is not None:
            preferences.backlog_ratio = backlog_ratio
            changed = True
        if max_consecutive is not None:
            preferences.max_consecutive_from_source = max_consecutive
            changed = True
        if clear_durations:
            preferences.min_duration = None
            preferences.max_duration = None
            changed = True
        if min_duration is not None:
            preferences.min_duration = min_duration
            changed = True
        if max_duration is not None:
            preferences.max_duration = max_duration
            changed = True

        if changed:
            preferences.updated_at = utcnow()
            svc.store.save_preferences(preferences)
            svc.feed.refresh_feed(user_id)
            console.print("[green]Preferences updated[/green]")

        console.print()
        console.print(f"[bold]Backlog ratio:[/bold] {preferences.backlog_ratio:.0%}")
        console.print(
            f"[bold]Max in a row per source:[/bold] {preferences.max_consecutive_from_source}"
        )
        console.print(
            f"[bold]Duration:[/bold] {format_duration(preferences.min_duration)} to "
            f"{format_duration(preferences.max_duration)}"
        )
        console.print()


if __name__ == "__main__":
    main()
