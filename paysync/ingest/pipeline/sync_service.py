"""
Bounded sync steps for payment sources.

A step claims a run, walks pages from the run's checkpoint cursor and writes
each page before checkpointing it. When the step budget runs out and work
remains, the run is marked ``continuing`` and the next step is queued on the
ingest worker. Every decision is made from the persisted run, so any worker
can pick up any step.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paysync.ingest.adapters.paypal import PaymentAPIError, PaymentAuthError
from paysync.ingest.metrics import record_sync_page, record_sync_retry, record_sync_step
from paysync.ingest.registry import PageFetcher, SourceDescriptor, get_active_registry
from paysync.models import ACTIVE_SYNC_STATUSES, SyncRunStatus, db

from .chunking import DateChunk, chunk_date_range
from .continuation import ContinuationDispatchError, dispatch_continuation
from .customers import sync_customers_from_records
from .normalize import NormalizedRecord
from .run_service import (
    Decision,
    SyncParams,
    SyncPausedError,
    SyncProgress,
    SyncRunService,
    checkpoint_cursor,
    decide_continuation,
    is_sync_paused,
)
from .upsert import BATCH_SIZE, upsert_transactions

logger = logging.getLogger(__name__)

PAUSED_MESSAGE = "Sync paused"


class UnknownSourceError(LookupError):
    pass


@dataclass
class SyncStepResult:
    success: bool
    status: str
    sync_run_id: int | None
    total_fetched: int = 0
    total_inserted: int = 0
    total_skipped: int = 0
    has_more: bool = False
    duration_ms: int = 0
    error: str | None = None

    def as_response(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "status": self.status,
            "syncRunId": self.sync_run_id,
            "totalFetched": self.total_fetched,
            "totalInserted": self.total_inserted,
            "totalSkipped": self.total_skipped,
            "hasMore": self.has_more,
            "durationMs": self.duration_ms,
        }
        if self.error:
            payload["error"] = self.error
        return payload


Dispatcher = Callable[[int, Sequence[int]], Any]


class SyncService:
    """Runs sync steps against a registered source."""

    def __init__(
        self,
        *,
        config: Mapping[str, Any] | None = None,
        session: Session | None = None,
        registry: Mapping[str, SourceDescriptor] | None = None,
        client_factory: Callable[[SourceDescriptor], PageFetcher] | None = None,
        dispatcher: Dispatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config if config is not None else current_app.config
        self.session = session or db.session
        self.registry = registry if registry is not None else get_active_registry(current_app)
        self.client_factory = client_factory
        self.dispatcher = dispatcher or dispatch_continuation
        self.clock = clock
        self.runs = SyncRunService(self.session, stale_minutes=int(self.config.get("SYNC_STALE_MINUTES", 30)))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def descriptor(self, source: str) -> SourceDescriptor:
        descriptor = self.registry.get(source)
        if descriptor is None:
            raise UnknownSourceError(f"Unknown source '{source}'.")
        return descriptor

    def start(self, source: str, params: SyncParams) -> SyncStepResult:
        """
        Create a run for ``source`` and execute its first step.

        Raises ``SyncPausedError`` when the kill switch is engaged and
        ``SyncConflictError`` when another run owns the source.
        """
        self.descriptor(source)
        if is_sync_paused(self.session):
            raise SyncPausedError(PAUSED_MESSAGE)
        run = self.runs.start_or_resume(source, params)
        return self._execute(run.id, started=self.clock())

    def run_step(self, run_id: int, cursor: Sequence[int] | None = None) -> SyncStepResult:
        """
        Claim a ``continuing`` run and execute its next step.

        The persisted checkpoint is authoritative; a differing ``cursor`` is
        only logged.
        """
        started = self.clock()
        run = self.runs.resume(run_id)
        if cursor is not None:
            expected = self._next_cursor(run, self._chunks_for(run))
            if tuple(int(value) for value in cursor) != expected:
                logger.warning(
                    "Continuation cursor differs from checkpoint; resuming from checkpoint",
                    extra={"sync_run_id": run_id, "sync_cursor": list(cursor), "sync_checkpoint": list(expected)},
                )
        return self._execute(run_id, started=started)

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------
    def _chunks_for(self, run) -> list[DateChunk]:
        params = SyncParams.from_metadata(run.metadata_json or {})
        return chunk_date_range(params.start, params.end, params.max_window_days)

    def _next_cursor(self, run, chunks: Sequence[DateChunk]) -> tuple[int, int]:
        params = SyncParams.from_metadata(run.metadata_json or {})
        chunk_index, page = checkpoint_cursor(run)
        if page == 0:
            return (chunk_index, params.first_page)
        stored = SyncProgress(
            chunk_index=chunk_index,
            page=page,
            total_chunks=len(chunks),
            total_pages=int((run.checkpoint_json or {}).get("totalPages") or 0),
        )
        return stored.next_cursor()

    def _build_client(self, descriptor: SourceDescriptor) -> PageFetcher:
        if self.client_factory is not None:
            return self.client_factory(descriptor)
        return descriptor.client_factory(self.config, on_retry=lambda: record_sync_retry(descriptor.name))

    def _budget_exhausted(self, started: float, pages: int) -> bool:
        max_pages = int(self.config.get("SYNC_MAX_PAGES_PER_STEP", 0) or 0)
        if max_pages and pages >= max_pages:
            return True
        budget = float(self.config.get("SYNC_STEP_BUDGET_SECONDS", 50))
        return self.clock() - started >= budget

    def _sync_customers(self, run_id: int, records: Sequence[NormalizedRecord]) -> None:
        if not records:
            return
        try:
            with self.session.begin_nested():
                sync_customers_from_records(records, session=self.session)
        except SQLAlchemyError:
            logger.error("Customer sync failed for page", extra={"sync_run_id": run_id}, exc_info=True)

    def _execute(self, run_id: int, *, started: float) -> SyncStepResult:
        run = self.runs.get_run(run_id)
        source = run.source
        try:
            params = SyncParams.from_metadata(run.metadata_json or {})
            chunks = self._chunks_for(run)
            chunk_index, page = self._next_cursor(run, chunks)
            descriptor = self.descriptor(source)
            client = self._build_client(descriptor)
            batch_size = int(self.config.get("UPSERT_BATCH_SIZE", BATCH_SIZE))
            pages_this_step = 0

            while True:
                if is_sync_paused(self.session):
                    self.runs.cancel_run(run_id, reason=PAUSED_MESSAGE)
                    logger.warning("Sync paused; run cancelled", extra={"sync_run_id": run_id, "sync_source": source})
                    return self._result(run_id, started, error=PAUSED_MESSAGE)
                if chunk_index >= len(chunks):
                    self.runs.complete(run_id)
                    break

                chunk = chunks[chunk_index]
                page_result = client.fetch_page(chunk.start, chunk.end, page, page_size=params.page_size)
                record_sync_page(source, outcome="records" if page_result.records else "empty")

                records: list[NormalizedRecord] = []
                unusable = 0
                for detail in page_result.records:
                    record = descriptor.normalizer(detail)
                    if record is None:
                        unusable += 1
                    else:
                        records.append(record)
                summary = upsert_transactions(records, batch_size=batch_size, session=self.session)
                self._sync_customers(run_id, records)

                progress = SyncProgress(
                    chunk_index=chunk_index,
                    page=page,
                    total_chunks=len(chunks),
                    total_pages=page_result.total_pages,
                    chunk_start=chunk.start,
                    chunk_end=chunk.end,
                    fetched=len(page_result.records),
                    inserted=summary.upserted,
                    skipped=unusable + summary.skipped_duplicate + summary.failed,
                )
                if not self.runs.checkpoint(run_id, progress):
                    logger.info("Run no longer active; stopping step", extra={"sync_run_id": run_id})
                    return self._result(run_id, started)
                pages_this_step += 1

                if decide_continuation(progress, fetch_all=params.fetch_all) is Decision.COMPLETE:
                    self.runs.complete(run_id)
                    break

                chunk_index, page = progress.next_cursor()
                if self._budget_exhausted(started, pages_this_step):
                    if not self.runs.mark_continuing(run_id):
                        return self._result(run_id, started)
                    self.dispatcher(run_id, (chunk_index, page))
                    return self._result(run_id, started)
        except ContinuationDispatchError as exc:
            return self._result(run_id, started, error=str(exc))
        except PaymentAuthError as exc:
            logger.error("Payment API rejected credentials", extra={"sync_run_id": run_id, "sync_source": source})
            self.runs.fail(run_id, str(exc))
            return self._result(run_id, started, error=str(exc))
        except PaymentAPIError as exc:
            logger.error(
                "Payment API request failed",
                extra={"sync_run_id": run_id, "sync_source": source, "status_code": exc.status_code},
            )
            self.runs.fail(run_id, str(exc))
            return self._result(run_id, started, error=str(exc))
        except Exception as exc:
            logger.exception("Sync step failed", extra={"sync_run_id": run_id, "sync_source": source})
            self.runs.fail(run_id, f"{exc.__class__.__name__}: {exc}")
            return self._result(run_id, started, error=str(exc))

        return self._result(run_id, started)

    def _result(self, run_id: int, started: float, *, error: str | None = None) -> SyncStepResult:
        duration = self.clock() - started
        run = self.runs.get_run(run_id)
        record_sync_step(run.source, duration)
        # An eager continuation may already have moved the run on.
        has_more = run.status in ACTIVE_SYNC_STATUSES
        success = has_more or run.status is SyncRunStatus.COMPLETED
        return SyncStepResult(
            success=success,
            status=run.status.value,
            sync_run_id=run_id,
            total_fetched=run.total_fetched,
            total_inserted=run.total_inserted,
            total_skipped=run.total_skipped,
            has_more=has_more,
            duration_ms=int(duration * 1000),
            error=error or (run.error_message if not success else None),
        )
