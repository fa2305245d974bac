"""
CLI for the offline cache router.

Commands:
    medicache install - Precache the static asset manifest and activate
    medicache activate - Delete cache versions other than the current one
    medicache caches - List cache versions and their entry counts
    medicache purge [NAME] - Delete one cache version, or all of them
    medicache fetch URL - Route a single request and show the response
    medicache push JSON - Render the notification a push payload produces
    medicache serve - Run the offline-first HTTP gateway
    medicache config - Show current configuration
    medicache version - Print version
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Annotated, AsyncIterator, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from medicache import __version__
from medicache.cache.store import CacheStorage
from medicache.config import Settings, clear_settings_cache, load_settings
from medicache.exceptions import ConfigurationError, InstallError, NetworkError, PushPayloadError
from medicache.logging import setup_logging
from medicache.network import HttpNetwork
from medicache.types import Request, RequestMode
from medicache.worker import ServiceWorker, purge_stale_caches

app = typer.Typer(
    name="medicache",
    help="MediCare offline cache router - precache, inspect and serve the app shell",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return load_settings()
    except ConfigurationError:
        return None


def _load_settings() -> Settings:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'medicache config' to see what's wrong."
        )
        raise typer.Exit(1)
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    settings.ensure_directories()
    return settings


@asynccontextmanager
async def _runtime(settings: Settings) -> AsyncIterator[tuple[CacheStorage, HttpNetwork]]:
    storage = CacheStorage(settings.CACHE_DIR)
    await storage.init()
    network = HttpNetwork(settings.ORIGIN, timeout=settings.REQUEST_TIMEOUT)
    try:
        yield storage, network
    finally:
        await network.close()
        await storage.close()


@app.command()
def install() -> None:
    """Precache the static asset manifest into the current cache version.

    Installation is all or nothing: if any asset cannot be fetched, nothing
    is cached. On success the new version is activated immediately and
    older cache versions are deleted.
    """
    settings = _load_settings()
    config = settings.cache_config()

    async def run() -> list[str] | None:
        async with _runtime(settings) as (storage, network):
            worker = ServiceWorker(config, storage, network)
            try:
                await worker.install()
            except InstallError as e:
                error_console.print(f"[red]Install failed:[/red] {e.message}")
                for url, reason in e.context.get("failed", {}).items():
                    error_console.print(f"  [dim]{url}[/dim] {reason}")
                return None
            return await worker.activate()

    deleted = asyncio.run(run())
    if deleted is None:
        raise typer.Exit(1)

    console.print(
        Panel(
            "\n".join(config.manifest_urls),
            title=f"[bold green]Installed {config.cache_name}[/bold green]",
            border_style="green",
        )
    )
    if deleted:
        console.print(f"[dim]Deleted old caches:[/dim] {', '.join(deleted)}")


@app.command()
def activate() -> None:
    """Delete every cache version except the current one."""
    settings = _load_settings()
    cache_name = settings.cache_name

    async def run() -> list[str] | None:
        async with _runtime(settings) as (storage, _network):
            if not await storage.has(cache_name):
                return None
            return await purge_stale_caches(storage, cache_name)

    deleted = asyncio.run(run())
    if deleted is None:
        error_console.print(
            f"[red]Error:[/red] {cache_name} is not installed. Run 'medicache install' first."
        )
        raise typer.Exit(1)

    if deleted:
        console.print(f"Deleted old caches: {', '.join(deleted)}")
    else:
        console.print("[dim]No stale caches.[/dim]")


@app.command()
def caches() -> None:
    """List cache versions and their entry counts."""
    settings = _load_settings()

    async def run() -> dict[str, int]:
        async with _runtime(settings) as (storage, _network):
            return await storage.entry_counts()

    counts = asyncio.run(run())

    table = Table(title="Caches", show_header=True)
    table.add_column("Cache", style="cyan")
    table.add_column("Entries", justify="right")
    table.add_column("Current", justify="center")
    for name, count in counts.items():
        current = "[green]yes[/green]" if name == settings.cache_name else ""
        table.add_row(name, str(count), current)
    console.print(table)


@app.command()
def purge(
    name: Annotated[
        Optional[str],
        typer.Argument(help="Cache version to delete (default: all)"),
    ] = None,
) -> None:
    """Delete one cache version, or every cache version."""
    settings = _load_settings()

    async def run() -> list[str]:
        async with _runtime(settings) as (storage, _network):
            names = [name] if name else await storage.keys()
            return [n for n in names if await storage.delete(n)]

    deleted = asyncio.run(run())
    if name and not deleted:
        error_console.print(f"[red]Error:[/red] no cache named {name}")
        raise typer.Exit(1)
    console.print(f"Deleted {len(deleted)} cache(s)")


@app.command()
def fetch(
    url: Annotated[str, typer.Argument(help="Absolute URL to request")],
    method: Annotated[str, typer.Option("--method", "-X", help="HTTP method")] = "GET",
    mode: Annotated[
        RequestMode, typer.Option("--mode", "-m", help="Request mode")
    ] = RequestMode.CORS,
    destination: Annotated[
        str, typer.Option("--destination", "-d", help="Request destination (image, script, ...)")
    ] = "",
) -> None:
    """Route a single request through the offline cache router."""
    settings = _load_settings()
    config = settings.cache_config()
    request = Request(url=url, method=method, mode=mode, destination=destination)

    async def run():
        async with _runtime(settings) as (storage, network):
            worker = ServiceWorker(config, storage, network)
            request_class = worker.router.classify(request)
            response = await worker.handle_fetch(request)
            await worker.router.drain()
            return request_class, response

    try:
        request_class, response = asyncio.run(run())
    except NetworkError as e:
        error_console.print(f"Network error: {e}", markup=False, style="red")
        raise typer.Exit(1)

    console.print(f"[bold]Class:[/bold] {request_class.value}")
    console.print(f"[bold]Status:[/bold] {response.status} ({response.type.value})")
    for header, value in response.headers.items():
        console.print(f"{header}: {value}", markup=False, style="dim")
    content_type = response.content_type or ""
    if content_type.startswith("text/") or "json" in content_type:
        console.print()
        console.print(response.text[:2000], markup=False, highlight=False)
    else:
        console.print(f"[dim]{len(response.body)} bytes[/dim]")


@app.command()
def push(
    payload: Annotated[str, typer.Argument(help='JSON payload: {"title", "body", "url"?}')],
) -> None:
    """Show the notification a push payload would produce."""
    settings = _load_settings()
    config = settings.cache_config()

    async def run():
        async with _runtime(settings) as (storage, network):
            worker = ServiceWorker(config, storage, network)
            return await worker.handle_push(payload)

    try:
        notification = asyncio.run(run())
    except PushPayloadError as e:
        error_console.print(f"[red]Invalid payload:[/red] {e}")
        raise typer.Exit(1)

    console.print(
        Panel(
            f"{notification.body}\n\n"
            f"[dim]icon[/dim] {notification.icon}  [dim]badge[/dim] {notification.badge}\n"
            f"[dim]opens[/dim] {notification.data['url']}",
            title=f"[bold]{notification.title}[/bold]",
            border_style="cyan",
        )
    )


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Bind port")] = 8080,
) -> None:
    """Run the offline-first HTTP gateway in front of ORIGIN."""
    import uvicorn

    from medicache.server import create_app

    settings = _load_settings()
    console.print(
        f"Serving [cyan]{settings.ORIGIN}[/cyan] offline-first on "
        f"[bold]http://{host}:{port}[/bold] ({settings.cache_name})"
    )
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.LOG_LEVEL.lower())


@app.command()
def config() -> None:
    """Show current configuration."""
    console.print()
    console.print("[bold]MediCare Offline Configuration[/bold]")
    console.print()

    try:
        clear_settings_cache()
        settings = load_settings()
    except ConfigurationError as e:
        error_console.print("[red]Configuration is invalid.[/red]")
        for error in e.context["errors"]:
            error_console.print(f"  {error}", markup=False)
        error_console.print()
        error_console.print("Create a .env file or set environment variables.")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"medicache version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
