"""
Command-line interface for nautune.

This module implements the CLI using Click, on top of the repository,
download and cleanup modules. rich-click is used for the output colors.

Commands:
    nautune login                        Authenticate and print the session token
    nautune libraries                    List libraries
    nautune albums                       List albums (paginated)
    nautune artists                      List artists (paginated)
    nautune search <query>               Search albums, artists or tracks
    nautune download album <album_id>    Download every track of an album
    nautune download playlist <id>       Download a playlist for offline use
    nautune downloads                    List download records
    nautune cleanup ...                  Free storage

Global Options:
    --config <path>                      Config file (default: ./config.yaml)
    --offline                            Browse the downloaded tracks only

Usage:
    nautune login
    nautune albums --limit 20 --start 40
    nautune --offline search "blue" --type tracks
    nautune download album 5f1e...
    nautune cleanup --older-than 30

Configuration:
    Requires config.yaml (server URL, username, output directory). Secrets
    come from the environment or .env: NAUTUNE_PASSWORD for login,
    NAUTUNE_ACCESS_TOKEN and NAUTUNE_USER_ID for every other command.

Composition:
    Every command builds its collaborators (download index, Jellyfin
    client, mode controller, download manager) in _open_runtime() and
    disposes of them when it returns. Nothing is global.
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

import rich_click as click
from rich.console import Console
from rich.table import Table

# Configure rich-click for better help formatting
click.rich_click.USE_RICH_MARKUP = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = ""
click.rich_click.MAX_WIDTH = 100
click.rich_click.OPTION_GROUPS = {
    "nautune cleanup": [
        {
            "name": "Policies",
            "options": ["--older-than", "--free-mb", "--album", "--artist", "--enforce-limit", "--all"],
        },
    ],
}

from nautune import __version__
from nautune.core import (
    Config,
    ConfigError,
    DatabaseError,
    DownloadIndex,
    JellyfinError,
    NautuneError,
    PreconditionError,
    get_logger,
    load_config,
    setup_logging,
    shutdown_logging,
)
from nautune.core.progress import BatchProgress
from nautune.download import (
    CleanupResult,
    DownloadItem,
    DownloadManager,
    DownloadStatus,
    clear_all,
    cleanup_older_than,
    enforce_storage_limit,
    free_bytes,
    remove_by_album,
    remove_by_artist,
)
from nautune.jellyfin import JellyfinClient, Session
from nautune.repository import OFFLINE_LIBRARY, ModeController, MusicRepository

logger = get_logger(__name__)
console = Console()

POLL_INTERVAL_SECONDS = 0.25


@dataclass
class Runtime:
    """Collaborators of one CLI invocation."""
    config: Config
    index: DownloadIndex
    client: JellyfinClient
    controller: ModeController
    manager: DownloadManager

    @property
    def repository(self) -> MusicRepository:
        return self.controller.repository


@click.group()
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.yaml (default: ./config.yaml)."
)
@click.option(
    "--offline",
    is_flag=True,
    help="Use downloaded tracks only, even when the server is reachable."
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug messages.")
@click.version_option(__version__, prog_name="nautune")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], offline: bool, verbose: bool) -> None:
    """
    nautune: browse and download a Jellyfin music library, online or offline.

    \b
    BASIC USAGE:
        nautune login                          # Get an access token
        nautune albums                         # Browse the library
        nautune download album <album-id>      # Keep an album offline
        nautune --offline albums               # Browse downloaded music
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["offline"] = offline
    ctx.obj["verbose"] = verbose


# =============================================================================
# Runtime
# =============================================================================

def _load_configuration(ctx: click.Context) -> Config:
    config = load_config(ctx.obj.get("config_path"))
    config.output.directory.mkdir(parents=True, exist_ok=True)
    return config


def _restore_session(client: JellyfinClient, config: Config) -> None:
    server = config.server
    if server.access_token and server.user_id:
        client.restore_session(Session(
            server_url=server.url,
            username=server.username,
            user_id=server.user_id,
            access_token=server.access_token,
            selected_library_id=server.library_id,
        ))


@asynccontextmanager
async def _open_runtime(config: Config, offline: bool) -> AsyncIterator[Runtime]:
    """Build every collaborator for one command and dispose of them afterwards."""
    index = DownloadIndex(config.output.database_path)
    client = JellyfinClient(config.server.url)
    _restore_session(client, config)

    controller = ModeController(
        client,
        index,
        offline_pinned=offline or config.mode.offline,
        online_debounce=config.mode.online_debounce,
    )
    manager = DownloadManager(
        index,
        lambda track: client.stream_download(track.id),
        config.output.downloads_directory,
        max_concurrent=config.download.max_concurrent,
        artwork_fetcher=client.fetch_image,
    )
    logger.debug(f"Using {controller.repository.type_name}")

    try:
        yield Runtime(config, index, client, controller, manager)
    finally:
        await manager.close()
        controller.close()
        await client.close()
        index.close()


def _execute(ctx: click.Context, command: Callable[[Runtime], Awaitable[None]]) -> None:
    """
    Run one async command with logging, the runtime and error reporting.

    Exit codes:
        1 configuration error, 2 download index error, 3 Jellyfin error,
        4 other nautune error, 130 interrupted.
    """
    try:
        config = _load_configuration(ctx)
    except ConfigError as e:
        click.echo(f"Configuration error: {e.message}", err=True)
        sys.exit(1)

    setup_logging(
        config.output.directory,
        console_level=logging.DEBUG if ctx.obj.get("verbose") else logging.INFO
    )

    async def main() -> None:
        async with _open_runtime(config, ctx.obj.get("offline", False)) as runtime:
            await command(runtime)

    try:
        asyncio.run(main())

    except DatabaseError as e:
        click.echo(f"Download index error: {e.message}", err=True)
        logger.error(f"Download index error: {e.message}", exc_info=True)
        sys.exit(2)

    except JellyfinError as e:
        click.echo(f"Jellyfin error: {e.message}", err=True)
        if e.is_auth_error:
            click.echo("Run `nautune login` and update NAUTUNE_ACCESS_TOKEN", err=True)
        logger.error(f"Jellyfin error: {e.message}", exc_info=True)
        sys.exit(3)

    except NautuneError as e:
        click.echo(f"Error: {e.message}", err=True)
        logger.error(f"Error: {e.message}", exc_info=True)
        sys.exit(4)

    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        logger.info("Interrupted by user")
        sys.exit(130)

    finally:
        shutdown_logging()


def _library_id(runtime: Runtime, library: Optional[str]) -> str:
    if library:
        return library
    if runtime.controller.is_offline:
        return OFFLINE_LIBRARY.id
    if runtime.config.server.library_id:
        return runtime.config.server.library_id
    raise PreconditionError("No library selected")


def _format_duration(seconds: int) -> str:
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes}:{seconds:02d}"


def _format_size(num_bytes: int | None) -> str:
    if not num_bytes:
        return "-"
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} GB"


# =============================================================================
# Commands: session and browsing
# =============================================================================

@cli.command()
@click.pass_context
def login(ctx: click.Context) -> None:
    """Authenticate with username/password and print the session variables."""

    async def command(runtime: Runtime) -> None:
        server = runtime.config.server
        password = server.password or click.prompt(
            f"Password for {server.username}", hide_input=True
        )
        session = await runtime.client.authenticate(server.username, password)

        console.print(f"[green]Logged in as {session.username}[/green]")
        console.print("Add these lines to your .env file:")
        console.print(f"NAUTUNE_ACCESS_TOKEN={session.access_token}", highlight=False)
        console.print(f"NAUTUNE_USER_ID={session.user_id}", highlight=False)

    _execute(ctx, command)


@cli.command()
@click.pass_context
def libraries(ctx: click.Context) -> None:
    """List the libraries of the active source."""

    async def command(runtime: Runtime) -> None:
        items = await runtime.controller.run(lambda repo: repo.get_libraries())
        table = Table(title=f"Libraries ({runtime.repository.type_name})")
        table.add_column("Id", style="dim")
        table.add_column("Name")
        table.add_column("Type")
        for library in items:
            table.add_row(library.id, library.name, library.collection_type or "-")
        console.print(table)

    _execute(ctx, command)


@cli.command()
@click.option("--library", default=None, help="Library id (default: server.library_id).")
@click.option("--start", default=0, show_default=True, type=click.IntRange(min=0))
@click.option("--limit", default=50, show_default=True, type=click.IntRange(min=0))
@click.pass_context
def albums(ctx: click.Context, library: Optional[str], start: int, limit: int) -> None:
    """List albums, one page at a time."""

    async def command(runtime: Runtime) -> None:
        library_id = _library_id(runtime, library)
        items = await runtime.controller.run(
            lambda repo: repo.get_albums(library_id, start_index=start, limit=limit)
        )
        table = Table(title=f"Albums {start + 1}-{start + len(items)}")
        table.add_column("Id", style="dim")
        table.add_column("Album")
        table.add_column("Artist")
        table.add_column("Year", justify="right")
        for album in items:
            table.add_row(album.id, album.name, album.display_artist, str(album.production_year or ""))
        console.print(table)

    _execute(ctx, command)


@cli.command()
@click.option("--library", default=None, help="Library id (default: server.library_id).")
@click.option("--start", default=0, show_default=True, type=click.IntRange(min=0))
@click.option("--limit", default=50, show_default=True, type=click.IntRange(min=0))
@click.pass_context
def artists(ctx: click.Context, library: Optional[str], start: int, limit: int) -> None:
    """List artists, one page at a time."""

    async def command(runtime: Runtime) -> None:
        library_id = _library_id(runtime, library)
        items = await runtime.controller.run(
            lambda repo: repo.get_artists(library_id, start_index=start, limit=limit)
        )
        table = Table(title=f"Artists {start + 1}-{start + len(items)}")
        table.add_column("Id", style="dim")
        table.add_column("Artist")
        table.add_column("Albums", justify="right")
        for artist in items:
            table.add_row(artist.id, artist.name, str(artist.album_count or ""))
        console.print(table)

    _execute(ctx, command)


@cli.command()
@click.argument("query")
@click.option(
    "--type", "kind",
    type=click.Choice(["albums", "artists", "tracks"]),
    default="tracks",
    show_default=True,
)
@click.option("--library", default=None, help="Library id (default: server.library_id).")
@click.pass_context
def search(ctx: click.Context, query: str, kind: str, library: Optional[str]) -> None:
    """Search albums, artists or tracks by name."""

    async def command(runtime: Runtime) -> None:
        library_id = _library_id(runtime, library)
        table = Table(title=f"{kind.capitalize()} matching '{query}'")
        table.add_column("Id", style="dim")
        table.add_column("Name")

        if kind == "albums":
            results = await runtime.controller.run(lambda repo: repo.search_albums(query, library_id))
            table.add_column("Artist")
            for album in results:
                table.add_row(album.id, album.name, album.display_artist)
        elif kind == "artists":
            results = await runtime.controller.run(lambda repo: repo.search_artists(query, library_id))
            for artist in results:
                table.add_row(artist.id, artist.name)
        else:
            results = await runtime.controller.run(lambda repo: repo.search_tracks(query, library_id))
            table.add_column("Artist")
            table.add_column("Album")
            table.add_column("Length", justify="right")
            for track in results:
                table.add_row(
                    track.id, track.name, track.display_artist, track.album or "",
                    _format_duration(track.duration_seconds)
                )
        console.print(table)

    _execute(ctx, command)


# =============================================================================
# Commands: downloads
# =============================================================================

@cli.group()
def download() -> None:
    """Download tracks for offline use."""


async def _drain_with_progress(manager: DownloadManager, items: list[DownloadItem], title: str) -> None:
    """Show a progress bar until every requested item is completed or failed."""
    with BatchProgress(title, [item.track_id for item in items]) as batch:
        for item in items:
            if item.status is DownloadStatus.COMPLETED:
                batch.skip(item.track_id)

        while not batch.done:
            await asyncio.sleep(POLL_INTERVAL_SECONDS)
            for track_id in batch.pending:
                current = manager.get(track_id)
                if current is None or current.status is DownloadStatus.FAILED:
                    batch.fail(track_id)
                elif current.status is DownloadStatus.COMPLETED:
                    batch.finish(track_id)
                else:
                    batch.advance(track_id, current.progress)

    if batch.count("failed"):
        console.print(f"[red]{batch.count('failed')} track(s) failed, see `nautune downloads --status failed`[/red]")


async def _apply_storage_limit(runtime: Runtime) -> None:
    limit = runtime.config.download.storage_limit_bytes
    if limit:
        result = await enforce_storage_limit(runtime.manager, limit)
        if result.removed:
            console.print(
                f"[yellow]Storage limit reached: removed {result.count} older tracks "
                f"({_format_size(result.freed_bytes)})[/yellow]"
            )


@download.command("album")
@click.argument("album_id")
@click.pass_context
def download_album(ctx: click.Context, album_id: str) -> None:
    """Download every track of an album."""

    async def command(runtime: Runtime) -> None:
        runtime.manager.verify_downloads()
        await runtime.manager.resume_pending()
        items = await runtime.manager.download_album(runtime.client, album_id)
        title = items[0].track.album if items and items[0].track.album else "Album"
        await _drain_with_progress(runtime.manager, items, title)
        await _apply_storage_limit(runtime)

    _execute(ctx, command)


@download.command("playlist")
@click.argument("playlist_id")
@click.option("--name", default=None, help="Name stored with the offline snapshot.")
@click.pass_context
def download_playlist(ctx: click.Context, playlist_id: str, name: Optional[str]) -> None:
    """Download a playlist and keep its order for offline browsing."""

    async def command(runtime: Runtime) -> None:
        playlist_name = name
        if playlist_name is None:
            playlists = await runtime.client.fetch_playlists()
            playlist_name = next((p.name for p in playlists if p.id == playlist_id), playlist_id)

        runtime.manager.verify_downloads()
        await runtime.manager.resume_pending()
        items = await runtime.manager.download_playlist(runtime.client, playlist_id, playlist_name)
        await _drain_with_progress(runtime.manager, items, playlist_name)
        await _apply_storage_limit(runtime)

    _execute(ctx, command)


@cli.command()
@click.option(
    "--status",
    type=click.Choice([s.value for s in DownloadStatus]),
    default=None,
    help="Only show downloads with this status."
)
@click.pass_context
def downloads(ctx: click.Context, status: Optional[str]) -> None:
    """List download records and storage usage."""

    async def command(runtime: Runtime) -> None:
        items = runtime.manager.items(DownloadStatus(status) if status else None)
        table = Table(title="Downloads")
        table.add_column("Id", style="dim")
        table.add_column("Track")
        table.add_column("Album")
        table.add_column("Status")
        table.add_column("Size", justify="right")
        for item in items:
            style = {
                DownloadStatus.COMPLETED: "green",
                DownloadStatus.FAILED: "red",
                DownloadStatus.DOWNLOADING: "cyan",
            }.get(item.status, "white")
            table.add_row(
                item.track_id,
                f"{item.track.display_artist} - {item.track.name}",
                item.track.album or "",
                f"[{style}]{item.status.value}[/{style}]",
                _format_size(item.total_bytes),
            )
        console.print(table)
        console.print(f"Total stored: {_format_size(runtime.manager.total_bytes())}")

    _execute(ctx, command)


@cli.command()
@click.option("--older-than", "older_than", type=click.IntRange(min=0), default=None,
              help="Remove downloads completed more than DAYS ago.")
@click.option("--free-mb", "free_mb", type=click.IntRange(min=1), default=None,
              help="Free at least this many MB, largest files first.")
@click.option("--album", "album_id", default=None, help="Remove every track of an album.")
@click.option("--artist", default=None, help="Remove every track of an artist.")
@click.option("--enforce-limit", is_flag=True,
              help="Remove oldest downloads until under download.storage_limit_mb.")
@click.option("--all", "remove_all", is_flag=True, help="Remove every downloaded track.")
@click.pass_context
def cleanup(
    ctx: click.Context,
    older_than: Optional[int],
    free_mb: Optional[int],
    album_id: Optional[str],
    artist: Optional[str],
    enforce_limit: bool,
    remove_all: bool,
) -> None:
    """
    Free storage used by downloads.

    Without options, removes downloads older than download.auto_cleanup_days.
    """
    chosen = [o for o in (older_than, free_mb, album_id, artist) if o is not None]
    if len(chosen) + int(enforce_limit) + int(remove_all) > 1:
        raise click.UsageError("Only one cleanup policy can be used at a time")

    async def command(runtime: Runtime) -> None:
        manager = runtime.manager
        manager.verify_downloads()

        if older_than is not None:
            result = await cleanup_older_than(manager, older_than)
        elif free_mb is not None:
            result = await free_bytes(manager, free_mb * 1024 * 1024)
        elif album_id is not None:
            result = await remove_by_album(manager, album_id)
        elif artist is not None:
            result = await remove_by_artist(manager, artist)
        elif enforce_limit:
            result = await enforce_storage_limit(manager, runtime.config.download.storage_limit_bytes)
        elif remove_all:
            result = await clear_all(manager)
        elif runtime.config.download.auto_cleanup_days:
            result = await cleanup_older_than(manager, runtime.config.download.auto_cleanup_days)
        else:
            result = CleanupResult()
            console.print("No cleanup policy given and download.auto_cleanup_days is 0")

        console.print(
            f"Removed {result.count} tracks, freed {_format_size(result.freed_bytes)}"
        )

    _execute(ctx, command)


def main() -> None:
    """
    Entry point for the CLI.

    This function is called when running `nautune` from the command line.
    """
    cli()


if __name__ == "__main__":
    main()
