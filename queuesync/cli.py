"""
CLI interface for the game queue sync core.

Usage:
    queuesync list
    queuesync add "Hades" --url https://store.steampowered.com/app/1145360
    queuesync enrich --watch
    queuesync reconcile games.json
"""

import asyncio
import json
import os
import signal
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from typing_extensions import Annotated

from .config import SyncConfig, get_config_dir, get_config_path, load_config, save_config
from .destination import DestinationClient
from .document_store import DocumentStoreClient
from .enrichment import EnrichmentScheduler
from .errors import SyncError
from .logging_config import configure_ops_log, configure_quiet_mode, enable_debug_mode
from .metadata import MetadataClient
from .mutator import ConcurrentMutator, retry_on_conflict
from .reconcile import Action, BatchReconciler
from .types import Record, RecordStatus, decode_records, is_known

T = TypeVar("T")

# Configure quiet mode by default (suppress verbose library output)
# Set QUEUESYNC_VERBOSE=1 to enable debug mode via environment
if os.environ.get("QUEUESYNC_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"queuesync {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_config_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _config_callback(value: Optional[Path]) -> Optional[Path]:
    global _config_override
    _config_override = value
    return value


def _get_config() -> SyncConfig:
    return load_config(_config_override)


app = typer.Typer(
    name="queuesync",
    help="Keep the game queue document, its enrichment, and the backend in sync.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    config: Annotated[Optional[Path], typer.Option(
        "--config", "-c",
        envvar="QUEUESYNC_CONFIG",
        help="Path to queuesync.toml",
        callback=_config_callback,
        is_eager=True,
    )] = None,
):
    """Keep the game queue document, its enrichment, and the backend in sync."""


RetriesOption = Annotated[int, typer.Option(
    "--retries", "-r",
    min=1,
    help="Attempts in total when another writer changed the document first",
)]


def _run(coro: Awaitable[T]) -> T:
    """Run a command coroutine, turning known failures into a clean exit."""
    try:
        return asyncio.run(coro)
    except SyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _parse_status(value: str) -> RecordStatus:
    try:
        return RecordStatus.parse(value)
    except SyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _format_record(r: Record) -> str:
    pin = "*" if r.is_pinned else " "
    score = f"{r.positive_percentage}%" if is_known(r.positive_percentage) else "-"
    release = r.release_date if is_known(r.release_date) else "-"
    ea = " [EA]" if r.is_early_access is True else ""
    return f"{pin} {r.id:<14} {r.status.value:<10} {score:>4}  {release:<14} {r.name}{ea}"


def _echo_record(r: Record) -> None:
    if _json_output:
        typer.echo(json.dumps(r.to_dict(), ensure_ascii=False))
    else:
        typer.echo(_format_record(r))


async def _with_mutator(
    action: Callable[[ConcurrentMutator], Awaitable[T]],
    retries: int,
) -> T:
    config = _get_config()
    async with DocumentStoreClient(config.document) as store:
        mutator = ConcurrentMutator(store)
        return await retry_on_conflict(lambda: action(mutator), attempts=retries)


# -----------------------------------------------------------------------------
# Document commands
# -----------------------------------------------------------------------------

@app.command("list")
def list_cmd(
    status: Annotated[Optional[str], typer.Option(
        "--status", "-s",
        help="Only show one bucket (queueing, playing, completion)",
    )] = None,
):
    """List records in the document."""
    async def go():
        config = _get_config()
        async with DocumentStoreClient(config.document) as store:
            return await store.read()

    document = _run(go())
    records = list(document.records)
    if status:
        wanted = _parse_status(status)
        records = [r for r in records if r.status is wanted]
    records.sort(key=lambda r: not r.is_pinned)
    if _json_output:
        typer.echo(json.dumps({
            "revision": document.revision,
            "games": [r.to_dict() for r in records],
        }, ensure_ascii=False, indent=2))
        return
    if not records:
        typer.echo("No records.")
        return
    for r in records:
        typer.echo(_format_record(r))


@app.command()
def add(
    name: Annotated[str, typer.Argument(help="Display name")],
    url: Annotated[Optional[str], typer.Option("--url", "-u", help="Store URL")] = None,
    cover: Annotated[Optional[str], typer.Option("--cover", help="Cover image URL")] = None,
    status: Annotated[str, typer.Option("--status", "-s")] = RecordStatus.QUEUEING.value,
    retries: RetriesOption = 1,
):
    """Add a record."""
    record = _run(_with_mutator(
        lambda m: m.add_record(name, steam_url=url, cover_image=cover, status=status),
        retries,
    ))
    _echo_record(record)


@app.command()
def update(
    record_id: Annotated[str, typer.Argument(help="Record id")],
    status: Annotated[Optional[str], typer.Option("--status", "-s")] = None,
    name: Annotated[Optional[str], typer.Option("--name")] = None,
    url: Annotated[Optional[str], typer.Option("--url", "-u")] = None,
    retries: RetriesOption = 1,
):
    """Change a record's status, name, or URL."""
    changes = {}
    if status is not None:
        changes["status"] = _parse_status(status)
    if name is not None:
        changes["name"] = name
    if url is not None:
        changes["steam_url"] = url
    if not changes:
        typer.echo("Error: Specify at least one of --status, --name, --url", err=True)
        raise typer.Exit(1)
    record = _run(_with_mutator(lambda m: m.update_record(record_id, **changes), retries))
    _echo_record(record)


@app.command()
def pin(
    record_id: Annotated[str, typer.Argument(help="Record id")],
    retries: RetriesOption = 1,
):
    """Pin a record to the top of its bucket."""
    _echo_record(_run(_with_mutator(lambda m: m.set_pinned(record_id, True), retries)))


@app.command()
def unpin(
    record_id: Annotated[str, typer.Argument(help="Record id")],
    retries: RetriesOption = 1,
):
    """Unpin a record."""
    _echo_record(_run(_with_mutator(lambda m: m.set_pinned(record_id, False), retries)))


@app.command()
def remove(
    record_id: Annotated[str, typer.Argument(help="Record id")],
    retries: RetriesOption = 1,
):
    """Remove a record."""
    _run(_with_mutator(lambda m: m.remove_record(record_id), retries))
    typer.echo(f"Removed {record_id}")


@app.command()
def check():
    """Test connectivity to the document store."""
    async def go():
        config = _get_config()
        async with DocumentStoreClient(config.document) as store:
            ok = await store.check_connection()
            user = await store.current_user() if ok else None
            return store.location, ok, user

    location, ok, user = _run(go())
    if ok:
        who = f" as {user}" if user else ""
        typer.echo(f"Connected to {location}{who}")
    else:
        typer.echo(f"Cannot reach {location}", err=True)
        raise typer.Exit(1)


@app.command()
def init(
    owner: Annotated[str, typer.Option("--owner", prompt=True)],
    repo: Annotated[str, typer.Option("--repo", prompt=True)],
    path: Annotated[str, typer.Option("--path")] = "games.json",
    dest_url: Annotated[Optional[str], typer.Option("--dest-url")] = None,
    force: Annotated[bool, typer.Option("--force", help="Overwrite an existing config")] = False,
):
    """Write a config file. Tokens are read from the environment, not stored."""
    config_path = _config_override or get_config_path()
    if config_path.exists() and not force:
        typer.echo(f"Config already exists: {config_path} (use --force)", err=True)
        raise typer.Exit(1)
    config = SyncConfig(path=config_path)
    config.document.owner = owner
    config.document.repo = repo
    config.document.path = path
    if dest_url:
        config.destination.api_url = dest_url
    written = save_config(config, config_path)
    typer.echo(f"Wrote {written}")


# -----------------------------------------------------------------------------
# Background and batch jobs
# -----------------------------------------------------------------------------

@app.command()
def enrich(
    watch: Annotated[bool, typer.Option(
        "--watch", "-w",
        help="Keep running: initial pass, then every interval until interrupted",
    )] = False,
):
    """Refresh review and release info from the store catalog."""
    config = _get_config()
    configure_ops_log(get_config_dir())

    async def once():
        async with DocumentStoreClient(config.document) as store, \
                MetadataClient(config.metadata) as metadata:
            scheduler = EnrichmentScheduler(store, metadata, config=config.enrichment)
            return await scheduler.run_pass(prioritize_missing=True)

    async def forever():
        async with DocumentStoreClient(config.document) as store, \
                MetadataClient(config.metadata) as metadata:
            scheduler = EnrichmentScheduler(store, metadata, config=config.enrichment)
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, stop.set)
                except NotImplementedError:
                    pass
            scheduler.start()
            try:
                await stop.wait()
            finally:
                await scheduler.stop()

    if watch:
        typer.echo("Enrichment running. Ctrl-C to stop.", err=True)
        _run(forever())
        return

    report = _run(once())
    if _json_output:
        typer.echo(json.dumps({
            "visited": report.visited, "changed": report.changed,
            "unchanged": report.unchanged, "skipped": report.skipped,
            "failed": report.failed, "persisted": report.persisted,
            "outcome": report.outcome.value if report.outcome else None,
        }))
    else:
        typer.echo(str(report))


_ACTION_MARKS = {
    Action.CREATED: "+",
    Action.UPDATED: "~",
    Action.SKIPPED: "-",
    Action.FAILED: "!",
}


@app.command()
def reconcile(
    source: Annotated[Optional[Path], typer.Argument(
        help="Source snapshot JSON ({\"games\": [...]}). Defaults to the document store.",
    )] = None,
):
    """Upsert every record into the destination backend."""
    config = _get_config()
    try:
        config.destination.require()
    except SyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if source is not None and not source.exists():
        typer.echo(f"Error: source file not found: {source}", err=True)
        raise typer.Exit(1)
    configure_ops_log(get_config_dir())

    def progress(i: int, total: int, name: str, action: Action) -> None:
        if not _json_output:
            typer.echo(f"[{i}/{total}] {_ACTION_MARKS[action]} {action.value:<8} {name}")

    async def go():
        if source is not None:
            records = decode_records(source.read_text(encoding="utf-8"))
        else:
            async with DocumentStoreClient(config.document) as store:
                records = list((await store.read()).records)
        async with DestinationClient(config.destination) as destination:
            reconciler = BatchReconciler(
                destination,
                item_delay=config.reconcile.item_delay,
                on_progress=progress,
            )
            return await reconciler.reconcile(records)

    summary = _run(go())
    if _json_output:
        typer.echo(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
    else:
        typer.echo("")
        typer.echo(f"Total:   {summary.total}")
        typer.echo(f"Created: {summary.created}")
        typer.echo(f"Updated: {summary.updated}")
        typer.echo(f"Skipped: {summary.skipped}")
        typer.echo(f"Failed:  {summary.failed}")
        for name, message in summary.errors:
            typer.echo(f"  - {name}: {message}")
    if not summary.success:
        raise typer.Exit(1)


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="queuesync CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
