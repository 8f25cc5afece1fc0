"""
Hand-off of remaining work to the ingest worker queue.

A sync step that runs out of budget commits its ``continuing`` checkpoint and
then enqueues ``paysync.sync.continue_run`` carrying only the run id and the
next cursor. Everything else the worker needs is read back from ``sync_runs``.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

from celery import Celery
from flask import current_app
from kombu.exceptions import OperationalError as BrokerOperationalError

from paysync.ingest.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from paysync.ingest.metrics import record_continuation_dispatch

from .run_service import SyncRunService

logger = logging.getLogger(__name__)

CONTINUE_RUN_TASK = "paysync.sync.continue_run"
MERGE_IMPORT_TASK = "paysync.import.merge"


class ContinuationDispatchError(RuntimeError):
    def __init__(self, run_id: int, message: str) -> None:
        super().__init__(message)
        self.run_id = run_id


class MergeDispatchError(RuntimeError):
    def __init__(self, import_id: int, message: str) -> None:
        super().__init__(message)
        self.import_id = import_id


def _resolve_task(celery_app: Celery | None, name: str):
    if celery_app is None:
        raise RuntimeError("Ingest Celery app is not configured.")
    task = celery_app.tasks.get(name)
    if task is None:
        raise RuntimeError(f"Task '{name}' is not registered.")
    return task


def dispatch_continuation(run_id: int, cursor: Sequence[int], *, celery_app: Celery | None = None) -> Any:
    """
    Enqueue the next step of ``run_id`` starting at ``cursor``.

    A failed enqueue leaves nobody to advance the run, so the run is marked
    ``failed`` before ``ContinuationDispatchError`` is raised.
    """
    chunk_index, page = int(cursor[0]), int(cursor[1])
    try:
        task = _resolve_task(celery_app or get_celery_app(current_app), CONTINUE_RUN_TASK)
        result = task.apply_async(
            kwargs={"run_id": run_id, "cursor": [chunk_index, page]},
            queue=DEFAULT_QUEUE_NAME,
        )
    except Exception as exc:
        message = f"Continuation dispatch failed: {exc}"
        record_continuation_dispatch("failed")
        logger.error(
            "Continuation dispatch failed",
            extra={"sync_run_id": run_id, "sync_cursor": [chunk_index, page]},
            exc_info=True,
        )
        SyncRunService().fail(run_id, message)
        raise ContinuationDispatchError(run_id, message) from exc

    record_continuation_dispatch("queued")
    logger.info(
        "Continuation queued",
        extra={"sync_run_id": run_id, "sync_cursor": [chunk_index, page], "task_id": getattr(result, "id", None)},
    )
    return result


def dispatch_merge(import_id: int, *, celery_app: Celery | None = None) -> Any:
    """
    Enqueue the background merge for ``import_id``.

    A missing worker app or task, or an unreachable broker, raises
    ``MergeDispatchError``; the staged rows stay ``pending`` for a later merge.
    """
    try:
        task = _resolve_task(celery_app or get_celery_app(current_app), MERGE_IMPORT_TASK)
    except RuntimeError as exc:
        logger.error("Merge dispatch failed", extra={"import_id": import_id})
        raise MergeDispatchError(import_id, f"Merge dispatch failed: {exc}") from exc
    try:
        result = task.apply_async(kwargs={"import_id": import_id}, queue=DEFAULT_QUEUE_NAME)
    except BrokerOperationalError as exc:
        logger.error("Merge dispatch failed", extra={"import_id": import_id}, exc_info=True)
        raise MergeDispatchError(import_id, f"Merge dispatch failed: {exc}") from exc
    logger.info("Merge queued", extra={"import_id": import_id, "task_id": getattr(result, "id", None)})
    return result
