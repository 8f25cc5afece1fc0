"""
Ingest Celery tasks.

Tasks receive only primitive ids; the run rows in the database carry all
other state, so a retried or re-delivered task re-reads what it needs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Sequence

from celery import shared_task
from flask import current_app

from paysync.ingest.pipeline.merge_service import MergeService
from paysync.ingest.pipeline.run_service import SyncRunService, SyncRunStateError
from paysync.ingest.pipeline.sync_service import SyncService

logger = logging.getLogger(__name__)


@shared_task(name="paysync.healthcheck", bind=True)
def ingest_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": current_app.config.get("APP_VERSION"),
    }


@shared_task(name="paysync.sync.continue_run", bind=True, acks_late=True)
def continue_sync_run(self, *, run_id: int, cursor: Sequence[int] | None = None) -> dict[str, Any]:
    """
    Execute the next bounded step of a ``continuing`` sync run.

    A run that is no longer ``continuing`` (cancelled, swept as stale, or
    already claimed by another delivery) is left alone.
    """
    try:
        result = SyncService().run_step(run_id, cursor)
    except SyncRunStateError as exc:
        logger.warning(
            "Continuation skipped; run is not resumable",
            extra={"sync_run_id": run_id, "sync_status": exc.status.value},
        )
        return {"syncRunId": run_id, "status": exc.status.value, "skipped": True}
    return result.as_response()


@shared_task(name="paysync.import.merge", bind=True, acks_late=True)
def merge_import(self, *, import_id: int) -> dict[str, Any]:
    """Merge the pending staging rows of ``import_id`` into customers."""
    summary = MergeService().merge_import(import_id)
    return summary.as_dict()


@shared_task(name="paysync.sync.cleanup_stale", bind=True)
def cleanup_stale_runs(self, *, source: str | None = None, threshold_minutes: int | None = None) -> dict[str, Any]:
    """Fail active runs without checkpoint activity; suitable for Celery beat."""
    minutes = threshold_minutes or int(current_app.config.get("SYNC_STALE_MINUTES", 30))
    swept = SyncRunService(stale_minutes=minutes).cleanup_stale(source, minutes)
    return {"source": source, "thresholdMinutes": minutes, "swept": swept}
