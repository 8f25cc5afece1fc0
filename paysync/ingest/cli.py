"""
Operator commands for payment syncs, CSV imports and the ingest worker.
"""

from __future__ import annotations

import io
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from paysync.ingest.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from paysync.ingest.pipeline.chunking import clamp_sync_window
from paysync.ingest.pipeline.merge_service import MergeService
from paysync.ingest.pipeline.run_service import (
    SyncConflictError,
    SyncParams,
    SyncPausedError,
    SyncRunService,
    is_sync_paused,
    set_sync_paused,
)
from paysync.ingest.pipeline.staging import ImportRunNotFoundError, ImportRunStateError, stage_csv_upload
from paysync.ingest.pipeline.sync_service import SyncService
from paysync.ingest.registry import compute_source_readiness, get_active_registry
from paysync.models import db

DEFAULT_CHUNK_ROWS = 2000


@click.group(name="ingest", invoke_without_command=True)
@click.pass_context
def ingest_cli(ctx):
    """
    Payment sync and CSV import commands.

    Lists the enabled sources when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if ctx.invoked_subcommand is None:
        click.echo("Enabled sources:")
        for name in get_active_registry(app):
            click.echo(f"  - {name}")
        click.echo(f"Sync paused: {'yes' if is_sync_paused() else 'no'}")


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Ingest Celery app is unavailable. Ensure the ingest package initialises before running worker commands."
        )
    return celery_app


def _parse_cli_datetime(value: Optional[str], option: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise click.BadParameter(f"{value!r} is not an ISO-8601 date.", param_hint=option) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ----------------------------------------------------------------------
# Sync commands
# ----------------------------------------------------------------------
@ingest_cli.command("sync")
@click.argument("source")
@click.option("--start", "start_date", help="Window start (ISO-8601). Defaults to the configured range.")
@click.option("--end", "end_date", help="Window end (ISO-8601). Defaults to now minus the safety margin.")
@click.option(
    "--fetch-all/--single-page",
    default=True,
    show_default=True,
    help="Walk every page of every window, or stop after the first page.",
)
@click.option("--summary-json", is_flag=True, help="Emit the step result as JSON.")
@click.pass_context
def sync_command(
    ctx,
    source: str,
    start_date: Optional[str],
    end_date: Optional[str],
    fetch_all: bool,
    summary_json: bool,
):
    """
    Start a sync for SOURCE and run its first step inline.

    Later steps continue on the ingest worker.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    source = source.lower()
    descriptor = get_active_registry(app).get(source)
    if descriptor is None:
        raise click.ClickException(f"Unknown source '{source}'.")

    config = app.config
    try:
        start, end = clamp_sync_window(
            _parse_cli_datetime(start_date, "--start"),
            _parse_cli_datetime(end_date, "--end"),
            now=datetime.now(timezone.utc),
            default_range_days=int(config.get("SYNC_DEFAULT_RANGE_DAYS", 31)),
            max_lookback_days=int(config.get("SYNC_MAX_LOOKBACK_DAYS", 3 * 365 - 7)),
            end_safety_minutes=int(config.get("SYNC_END_DATE_SAFETY_MINUTES", 10)),
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    params = SyncParams(
        start=start,
        end=end,
        fetch_all=fetch_all,
        max_window_days=min(descriptor.max_window_days, int(config.get("SYNC_MAX_WINDOW_DAYS", 31))),
        page_size=int(config.get("SYNC_PAGE_SIZE", 100)),
    )
    try:
        result = SyncService().start(source, params)
    except SyncPausedError as exc:
        raise click.ClickException("Syncs are paused. Run 'flask ingest resume' first.") from exc
    except SyncConflictError as exc:
        raise click.ClickException(f"Sync run {exc.existing_run_id} is already active for {source}.") from exc

    if summary_json:
        click.echo(json.dumps(result.as_response(), indent=2))
    else:
        click.echo(
            f"Sync run {result.sync_run_id} {result.status}: fetched={result.total_fetched} "
            f"inserted={result.total_inserted} skipped={result.total_skipped} has_more={result.has_more}"
        )
    if not result.success:
        raise click.ClickException(result.error or f"Sync run {result.sync_run_id} failed.")


@ingest_cli.command("readiness")
@click.option("--ping", is_flag=True, help="Attempt an authenticated call against each source.")
@click.pass_context
def readiness_command(ctx, ping: bool):
    """Report whether each enabled source is configured (and reachable with --ping)."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    readiness = compute_source_readiness(app.config, get_active_registry(app).values(), require_auth_ping=ping)
    state = app.extensions.get("ingest")
    if state is not None:
        state["source_readiness"] = readiness
    click.echo(json.dumps(readiness, indent=2))
    if any(payload.get("status") != "ready" for payload in readiness.values()):
        ctx.exit(1)


@ingest_cli.command("runs")
@click.option("--source", help="Only list runs of this source.")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(1, 200))
def runs_command(source: Optional[str], limit: int):
    """List recent sync runs as JSON."""
    runs = SyncRunService()
    payload = [runs.summarize(run) for run in runs.list_runs(source.lower() if source else None, limit=limit)]
    click.echo(json.dumps(payload, indent=2))


@ingest_cli.command("cancel")
@click.argument("source")
@click.option("--run-id", type=int, help="Cancel a single run instead of every active run of SOURCE.")
def cancel_command(source: str, run_id: Optional[int]):
    """Cancel active sync runs of SOURCE."""
    runs = SyncRunService()
    if run_id is not None:
        if not runs.cancel_run(run_id):
            raise click.ClickException(f"Sync run {run_id} is not active.")
        click.echo(f"Cancelled sync run {run_id}.")
        return
    cancelled = runs.cancel_all(source.lower())
    click.echo(f"Cancelled {cancelled} active run(s) for {source.lower()}.")


@ingest_cli.command("cleanup-stale")
@click.option("--source", help="Only sweep runs of this source.")
@click.option("--minutes", type=click.IntRange(1), help="Staleness threshold; defaults to SYNC_STALE_MINUTES.")
@click.pass_context
def cleanup_stale_command(ctx, source: Optional[str], minutes: Optional[int]):
    """Fail active runs whose checkpoint has not moved within the threshold."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    threshold = minutes or int(app.config.get("SYNC_STALE_MINUTES", 30))
    swept = SyncRunService(stale_minutes=threshold).cleanup_stale(source.lower() if source else None, threshold)
    click.echo(f"Marked {swept} stale run(s) as failed (threshold {threshold} minutes).")


@ingest_cli.command("pause")
def pause_command():
    """Engage the kill switch; active runs cancel at their next page."""
    set_sync_paused(True)
    click.echo("Syncs paused.")


@ingest_cli.command("resume")
def resume_command():
    """Release the kill switch."""
    set_sync_paused(False)
    click.echo("Syncs resumed.")


# ----------------------------------------------------------------------
# CSV import commands
# ----------------------------------------------------------------------
def iter_csv_chunks(handle: io.TextIOBase, chunk_rows: int) -> Iterator[str]:
    """
    Split CSV text into chunks of at most ``chunk_rows`` data lines, each
    repeating the header line.

    A record whose quoted field spans several lines is kept whole.
    """
    header: Optional[str] = None
    buffer: list[str] = []
    pending = ""
    for line in handle:
        pending += line
        if pending.count('"') % 2:
            continue
        record, pending = pending, ""
        if header is None:
            if not record.strip():
                continue
            header = record if record.endswith("\n") else record + "\n"
            continue
        buffer.append(record)
        if len(buffer) >= chunk_rows:
            yield header + "".join(buffer)
            buffer = []
    if pending and header is not None:
        buffer.append(pending)
    if header is not None and buffer:
        yield header + "".join(buffer)


@ingest_cli.command("import-csv")
@click.argument("file_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--type", "csv_type", default="auto", show_default=True, help="Source type or 'auto' to detect.")
@click.option("--chunk-rows", default=DEFAULT_CHUNK_ROWS, show_default=True, type=click.IntRange(1))
@click.option("--merge/--no-merge", default=True, show_default=True, help="Merge inline after staging.")
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary payload.")
def import_csv_command(file_path: Path, csv_type: str, chunk_rows: int, merge: bool, summary_json: bool):
    """Stage FILE_PATH in chunks and optionally merge it."""
    import_id: Optional[int] = None
    staged = skipped = total = batches = 0
    errors: list[str] = []
    with file_path.open("r", encoding="utf-8-sig", newline="") as handle:
        for chunk in iter_csv_chunks(handle, chunk_rows):
            try:
                summary = stage_csv_upload(
                    chunk,
                    source_type=csv_type,
                    filename=file_path.name,
                    import_id=import_id,
                )
            except (ValueError, ImportRunNotFoundError, ImportRunStateError) as exc:
                raise click.ClickException(str(exc)) from exc
            import_id = summary.import_id
            staged += summary.rows_staged
            skipped += summary.rows_skipped_parse
            total += summary.total_data_rows
            batches += summary.batches
            errors.extend(summary.errors)

    if import_id is None:
        raise click.ClickException(f"{file_path} contains no CSV rows.")

    payload: dict[str, object] = {
        "importId": import_id,
        "staged": staged,
        "skipped": skipped,
        "totalRows": total,
        "batches": batches,
        "errors": errors[:50],
    }
    if merge:
        payload["merge"] = MergeService().merge_import(import_id).as_dict()

    if summary_json:
        click.echo(json.dumps(payload, indent=2))
    else:
        click.echo(f"Import {import_id}: staged={staged} skipped={skipped} total={total} batches={batches}")
        if merge:
            merged = payload["merge"]
            click.echo(
                f"  merged={merged['rows_merged']} skipped={merged['rows_skipped']} "
                f"errors={merged['rows_error']} conflicts={merged['rows_conflict']}"
            )


@ingest_cli.command("merge")
@click.argument("import_id", type=int)
def merge_command(import_id: int):
    """Merge the pending rows of IMPORT_ID inline."""
    try:
        summary = MergeService().merge_import(import_id)
    except (ImportRunNotFoundError, ImportRunStateError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(summary.as_dict(), indent=2))


@ingest_cli.command("init-db")
def init_db_command():
    """Create any missing tables."""
    db.create_all()
    click.echo("Database tables created.")


# ----------------------------------------------------------------------
# Worker commands
# ----------------------------------------------------------------------
@ingest_cli.group(name="worker")
def worker_group():
    """Manage the ingest background worker."""


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting ingest worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("paysync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'paysync.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
