"""
Ingest blueprint: sync and import endpoints plus worker health and metrics.
"""

from __future__ import annotations

from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, Response, current_app, jsonify, request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from paysync.ingest.adapters.csv_rows import CSVPayloadError
from paysync.ingest.pipeline.chunking import clamp_sync_window
from paysync.ingest.pipeline.continuation import MergeDispatchError, dispatch_merge
from paysync.ingest.pipeline.merge_service import MergeService
from paysync.ingest.pipeline.run_service import (
    SyncConflictError,
    SyncParams,
    SyncPausedError,
    SyncRunNotFoundError,
    SyncRunService,
    SyncRunStateError,
    is_sync_paused,
)
from paysync.ingest.pipeline.staging import ImportRunNotFoundError, ImportRunStateError, stage_csv_upload
from paysync.ingest.pipeline.sync_service import SyncService
from paysync.ingest.registry import SourceDescriptor, get_active_registry
from paysync.models import ImportRun, ImportRunStatus, SyncRunStatus, as_utc, db
from paysync.utils.auth import verify

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app

ingest_blueprint = Blueprint("ingest", __name__)


def _json_error(message: str, http_status: HTTPStatus, **extra: Any):
    payload: dict[str, Any] = {"error": message}
    payload.update(extra)
    return jsonify(payload), http_status


def _require_operator():
    result = verify(request)
    if not result.valid:
        return _json_error(result.error or "Forbidden.", HTTPStatus.FORBIDDEN)
    return None


def _run_service() -> SyncRunService:
    return SyncRunService(stale_minutes=int(current_app.config.get("SYNC_STALE_MINUTES", 30)))


def _serialize_source(descriptor: SourceDescriptor) -> dict:
    return {
        "name": descriptor.name,
        "title": descriptor.title,
        "summary": descriptor.summary,
        "maxWindowDays": descriptor.max_window_days,
    }


def _parse_request_datetime(value: Any, field: str) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"{field} must be an ISO-8601 date or timestamp.") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _build_sync_params(descriptor: SourceDescriptor, body: dict[str, Any]) -> SyncParams:
    config = current_app.config
    start, end = clamp_sync_window(
        _parse_request_datetime(body.get("startDate"), "startDate"),
        _parse_request_datetime(body.get("endDate"), "endDate"),
        now=datetime.now(timezone.utc),
        default_range_days=int(config.get("SYNC_DEFAULT_RANGE_DAYS", 31)),
        max_lookback_days=int(config.get("SYNC_MAX_LOOKBACK_DAYS", 3 * 365 - 7)),
        end_safety_minutes=int(config.get("SYNC_END_DATE_SAFETY_MINUTES", 10)),
    )
    try:
        first_page = max(1, int(body.get("page") or 1))
    except (TypeError, ValueError) as exc:
        raise ValueError("page must be a positive integer.") from exc
    return SyncParams(
        start=start,
        end=end,
        fetch_all=body.get("fetchAll") is True,
        max_window_days=min(descriptor.max_window_days, int(config.get("SYNC_MAX_WINDOW_DAYS", 31))),
        page_size=int(config.get("SYNC_PAGE_SIZE", 100)),
        first_page=first_page,
    )


def _step_response(result):
    status = HTTPStatus.INTERNAL_SERVER_ERROR if result.status == SyncRunStatus.FAILED.value else HTTPStatus.OK
    return jsonify(result.as_response()), status


# ----------------------------------------------------------------------
# Sync
# ----------------------------------------------------------------------
@ingest_blueprint.post("/sync/<source>")
def start_sync(source: str):
    """
    Start, continue or cancel a sync for ``source``.

    ``forceCancel`` cancels every active run; ``syncRunId`` together with
    ``continuation`` runs the next step of that run inline.
    """
    denied = _require_operator()
    if denied:
        return denied

    source = source.lower()
    descriptor = get_active_registry(current_app).get(source)
    if descriptor is None:
        return _json_error("unknown_source", HTTPStatus.NOT_FOUND, source=source)

    body = request.get_json(silent=True) or {}
    runs = _run_service()

    if body.get("forceCancel"):
        cancelled = runs.cancel_all(source)
        return jsonify({"success": True, "status": SyncRunStatus.CANCELLED.value, "cancelled": cancelled}), 200

    service = SyncService()
    if body.get("syncRunId") and body.get("continuation"):
        try:
            run_id = int(body["syncRunId"])
        except (TypeError, ValueError):
            return _json_error("syncRunId must be an integer.", HTTPStatus.BAD_REQUEST)
        try:
            result = service.run_step(run_id)
        except SyncRunNotFoundError:
            return _json_error("sync_run_not_found", HTTPStatus.NOT_FOUND, syncRunId=run_id)
        except SyncRunStateError as exc:
            return _json_error(str(exc), HTTPStatus.CONFLICT, existingSyncId=run_id, status=exc.status.value)
        return _step_response(result)

    if body.get("cleanupStale"):
        runs.cleanup_stale(source)

    try:
        params = _build_sync_params(descriptor, body)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    try:
        result = service.start(source, params)
    except SyncPausedError:
        return _json_error("sync_paused", HTTPStatus.SERVICE_UNAVAILABLE)
    except SyncConflictError as exc:
        return _json_error(str(exc), HTTPStatus.CONFLICT, existingSyncId=exc.existing_run_id)
    return _step_response(result)


@ingest_blueprint.get("/sync/<source>/runs")
def list_sync_runs(source: str):
    denied = _require_operator()
    if denied:
        return denied
    try:
        limit = min(max(int(request.args.get("limit", 20)), 1), 200)
    except ValueError:
        return _json_error("limit must be an integer.", HTTPStatus.BAD_REQUEST)
    runs = _run_service()
    return jsonify({"source": source.lower(), "runs": [runs.summarize(run) for run in runs.list_runs(source.lower(), limit=limit)]})


@ingest_blueprint.get("/sync/runs/<int:run_id>")
def get_sync_run(run_id: int):
    denied = _require_operator()
    if denied:
        return denied
    runs = _run_service()
    try:
        run = runs.get_run(run_id)
    except SyncRunNotFoundError:
        return _json_error("sync_run_not_found", HTTPStatus.NOT_FOUND, syncRunId=run_id)
    return jsonify(runs.summarize(run))


@ingest_blueprint.post("/sync/runs/<int:run_id>/cancel")
def cancel_sync_run(run_id: int):
    denied = _require_operator()
    if denied:
        return denied
    runs = _run_service()
    try:
        runs.get_run(run_id)
    except SyncRunNotFoundError:
        return _json_error("sync_run_not_found", HTTPStatus.NOT_FOUND, syncRunId=run_id)
    if not runs.cancel_run(run_id):
        run = runs.get_run(run_id)
        return _json_error("sync_run_not_active", HTTPStatus.CONFLICT, syncRunId=run_id, status=run.status.value)
    return jsonify({"success": True, "run": runs.summarize(runs.get_run(run_id))})


# ----------------------------------------------------------------------
# CSV import
# ----------------------------------------------------------------------
def _serialize_import(run: ImportRun) -> dict[str, Any]:
    def _iso(value):
        value = as_utc(value)
        return value.isoformat() if value else None

    return {
        "importId": run.id,
        "filename": run.filename,
        "sourceType": run.source_type,
        "status": run.status.value,
        "totalRows": run.total_rows,
        "rowsStaged": run.rows_staged,
        "rowsInvalid": run.rows_invalid,
        "rowsMerged": run.rows_merged,
        "rowsSkipped": run.rows_skipped,
        "rowsError": run.rows_error,
        "rowsConflict": run.rows_conflict,
        "startedAt": _iso(run.started_at),
        "stagedAt": _iso(run.staged_at),
        "completedAt": _iso(run.completed_at),
        "lastActivityAt": _iso(run.last_activity_at),
        "errorMessage": run.error_message,
    }


@ingest_blueprint.post("/import/csv")
def import_csv():
    """
    Stage one chunk of a CSV upload. Chunks after the first pass the
    ``importId`` returned by the first.
    """
    denied = _require_operator()
    if denied:
        return denied

    body = request.get_json(silent=True) or {}
    import_id = body.get("importId")
    try:
        summary = stage_csv_upload(
            body.get("csvText") or "",
            source_type=body.get("csvType"),
            filename=body.get("filename"),
            import_id=int(import_id) if import_id not in (None, "") else None,
        )
    except (CSVPayloadError, ValueError) as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except ImportRunNotFoundError:
        return _json_error("import_not_found", HTTPStatus.NOT_FOUND, importId=import_id)
    except ImportRunStateError as exc:
        return _json_error(str(exc), HTTPStatus.CONFLICT, importId=exc.import_id, status=exc.status.value)

    payload: dict[str, Any] = {
        "ok": True,
        "importId": summary.import_id,
        "sourceType": summary.source_type,
        "staged": summary.rows_staged,
        "skipped": summary.rows_skipped_parse,
        "totalRows": summary.total_data_rows,
        "batches": summary.batches,
        "errors": summary.errors,
        "phase": "staged",
    }
    if body.get("merge"):
        try:
            dispatch_merge(summary.import_id)
        except MergeDispatchError as exc:
            payload.update(ok=False, mergeQueued=False, detail=str(exc))
            return _json_error("merge_dispatch_failed", HTTPStatus.SERVICE_UNAVAILABLE, **payload)
        payload["mergeQueued"] = True
    return jsonify(payload), 200


@ingest_blueprint.post("/import/<int:import_id>/merge")
def merge_import(import_id: int):
    denied = _require_operator()
    if denied:
        return denied

    run = db.session.get(ImportRun, import_id, populate_existing=True)
    if run is None:
        return _json_error("import_not_found", HTTPStatus.NOT_FOUND, importId=import_id)
    if run.status == ImportRunStatus.COMPLETED:
        return jsonify({"ok": True, "importId": import_id, "status": run.status.value}), 200
    busy = run.status == ImportRunStatus.STAGING or (
        run.status == ImportRunStatus.PROCESSING and not MergeService().is_stale(run)
    )
    if busy:
        return _json_error(f"Import {import_id} is {run.status.value}.", HTTPStatus.CONFLICT, importId=import_id, status=run.status.value)

    try:
        dispatch_merge(import_id)
    except ImportRunStateError as exc:
        return _json_error(str(exc), HTTPStatus.CONFLICT, importId=import_id, status=exc.status.value)
    except MergeDispatchError as exc:
        return _json_error("merge_dispatch_failed", HTTPStatus.SERVICE_UNAVAILABLE, importId=import_id, detail=str(exc))
    run = db.session.get(ImportRun, import_id, populate_existing=True)
    return jsonify({"ok": True, "importId": import_id, "status": run.status.value}), HTTPStatus.ACCEPTED


@ingest_blueprint.get("/import/<int:import_id>")
def get_import(import_id: int):
    denied = _require_operator()
    if denied:
        return denied
    run = db.session.get(ImportRun, import_id, populate_existing=True)
    if run is None:
        return _json_error("import_not_found", HTTPStatus.NOT_FOUND, importId=import_id)
    return jsonify(_serialize_import(run))


# ----------------------------------------------------------------------
# Health and metrics
# ----------------------------------------------------------------------
@ingest_blueprint.get("/ingest/health")
def ingest_healthcheck():
    """
    Lightweight health endpoint proving the ingest blueprint mounted correctly.
    """
    state = current_app.extensions.get("ingest", {})
    return (
        jsonify(
            {
                "status": "ok",
                "sources": [_serialize_source(descriptor) for descriptor in get_active_registry(current_app).values()],
                "sourceReadiness": state.get("source_readiness", {}),
                "syncPaused": is_sync_paused(),
            }
        ),
        200,
    )


@ingest_blueprint.get("/ingest/worker_health")
def ingest_worker_health():
    """
    Validate worker availability via the heartbeat task.
    """
    timeout_seconds = float(request.args.get("timeout", 5))
    payload: dict[str, Any] = {"queue": DEFAULT_QUEUE_NAME, "timeout_seconds": timeout_seconds}

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("paysync.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        payload["status"] = "ok"
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover - defensive logging
        current_app.logger.exception("Ingest worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


@ingest_blueprint.get("/ingest/metrics")
def ingest_metrics():
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)
