"""
CLI for the PULSE data layer.

Commands:
    pulse quote SYMBOL - Fetch a stock quote through the cache
    pulse crypto SYMBOL - Fetch a crypto price through the cache
    pulse cache stats - Show per-namespace cache statistics
    pulse cache clear - Clear one namespace or all of them
    pulse cache invalidate PATTERN - Drop keys by prefix or regex
    pulse config - Show current configuration
    pulse version - Print version
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from typing import Annotated, Any, Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pulse import __version__
from pulse.cache.manager import CacheManager
from pulse.config import Settings, clear_settings_cache, get_settings
from pulse.exceptions import PulseError, RateLimitError
from pulse.logging import setup_logging
from pulse.services import Services, build_services
from pulse.types import now_ms

app = typer.Typer(
    name="pulse",
    help="PULSE - cached market data fetching",
    no_args_is_help=True,
)
cache_app = typer.Typer(help="Inspect and manage the cache", no_args_is_help=True)
app.add_typer(cache_app, name="cache")

console = Console()
error_console = Console(stderr=True)

T = TypeVar("T")


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except Exception:
        return None


def _require_settings() -> Settings:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'pulse config' to see what's wrong."
        )
        raise typer.Exit(1)
    setup_logging(settings.LOG_LEVEL)
    return settings


def _run_with_services(
    settings: Settings,
    action: Callable[[Services], Awaitable[T]],
) -> T:
    async def runner() -> T:
        services = build_services(settings)
        try:
            return await action(services)
        finally:
            await services.close()

    return asyncio.run(runner())


def _print_price(title: str, data: dict[str, Any]) -> None:
    cached = data.get("cached")
    lines = [
        f"[bold]{key}:[/bold] {value}"
        for key, value in data.items()
        if key not in ("cached", "source", "provider") and value is not None
    ]
    lines.append(f"[bold]source:[/bold] {data.get('source')}")
    lines.append(f"[bold]cached:[/bold] {'[green]yes[/green]' if cached else 'no'}")
    console.print(Panel("\n".join(lines), title=f"[bold cyan]{title}[/bold cyan]", border_style="cyan"))


def _report_error(e: PulseError) -> None:
    if isinstance(e, RateLimitError):
        wait_s = e.retry_after_ms(now_ms()) / 1000
        error_console.print(
            f"[red]Rate limited by {e.source}.[/red] Try again in {wait_s:.0f}s."
        )
    else:
        error_console.print(f"[red]Error:[/red] {e}")


@app.command()
def quote(
    symbol: Annotated[str, typer.Argument(help="Stock symbol (e.g., AAPL)")],
) -> None:
    """Fetch a stock quote (cached)."""
    settings = _require_settings()
    try:
        data = _run_with_services(settings, lambda s: s.quotes.get_quote(symbol))
    except PulseError as e:
        _report_error(e)
        raise typer.Exit(1)
    _print_price(f"Quote {symbol.upper()}", data)


@app.command()
def crypto(
    symbol: Annotated[str, typer.Argument(help="Crypto symbol (e.g., BTC)")],
) -> None:
    """Fetch a crypto price (cached)."""
    settings = _require_settings()
    try:
        data = _run_with_services(settings, lambda s: s.crypto.get_price(symbol))
    except PulseError as e:
        _report_error(e)
        raise typer.Exit(1)
    _print_price(f"Crypto {symbol.upper()}", data)


@cache_app.command("stats")
def cache_stats() -> None:
    """Show entry, expiry and hit counts per namespace."""
    settings = _require_settings()
    stats = _run_with_services(settings, lambda s: s.quotes_cache.get_stats())

    table = Table(title="Cache Statistics", show_header=True)
    table.add_column("Namespace", style="cyan")
    table.add_column("Entries", justify="right")
    table.add_column("Expired (not purged)", justify="right")
    table.add_column("Hits", justify="right", style="green")

    for namespace, ns_stats in stats.items():
        table.add_row(
            namespace,
            str(ns_stats.total_entries),
            str(ns_stats.expired_not_yet_purged),
            str(ns_stats.total_hits),
        )

    console.print(table)


@cache_app.command("clear")
def cache_clear(
    namespace: Annotated[
        Optional[str],
        typer.Option("--namespace", "-n", help="Clear only this namespace"),
    ] = None,
) -> None:
    """Clear the cache."""
    settings = _require_settings()
    if namespace is not None and namespace not in settings.CACHE_NAMESPACES:
        error_console.print(f"[red]Unknown namespace:[/red] {namespace}")
        raise typer.Exit(1)

    if namespace is None:
        _run_with_services(settings, lambda s: s.store.clear_all())
        console.print("[green]Cleared all namespaces.[/green]")
    else:
        _run_with_services(settings, lambda s: s.store.clear(namespace))
        console.print(f"[green]Cleared namespace {namespace}.[/green]")


@cache_app.command("invalidate")
def cache_invalidate(
    pattern: Annotated[str, typer.Argument(help="Key prefix, or regex with --regex")],
    regex: Annotated[
        bool,
        typer.Option("--regex", "-r", help="Treat PATTERN as a regular expression"),
    ] = False,
    namespace: Annotated[
        Optional[str],
        typer.Option("--namespace", "-n", help="Namespace to scan"),
    ] = None,
) -> None:
    """Delete cached keys matching a prefix or regular expression."""
    settings = _require_settings()
    try:
        matcher: str | re.Pattern[str] = re.compile(pattern) if regex else pattern
    except re.error as e:
        error_console.print(f"[red]Invalid regex:[/red] {e}")
        raise typer.Exit(1)

    target = namespace or settings.CACHE_DEFAULT_NAMESPACE
    if target not in settings.CACHE_NAMESPACES:
        error_console.print(f"[red]Unknown namespace:[/red] {target}")
        raise typer.Exit(1)

    async def invalidate(services: Services) -> int:
        manager = CacheManager(services.store, namespace=target)
        return await manager.invalidate_pattern(matcher)

    count = _run_with_services(settings, invalidate)
    console.print(f"Invalidated [bold]{count}[/bold] key(s) in {target}.")


@app.command()
def config() -> None:
    """Show current configuration.

    Displays all configuration values with API keys redacted.
    """
    console.print()
    console.print("[bold]PULSE Configuration[/bold]")
    console.print()

    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Configuration is invalid or incomplete.[/red]")
        error_console.print()
        error_console.print("Check CACHE_NAMESPACES / CACHE_DEFAULT_NAMESPACE and")
        error_console.print("the REQUEST_* values in your .env or environment.")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.redacted_display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"pulse-data version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
