"""
Run coordination and checkpoint persistence for source synchronisation.

Every state change is a conditional UPDATE against ``sync_runs``. The row
itself is the mutual-exclusion primitive: invocations never share memory, so
whichever coordinator's UPDATE matches the expected status wins and the others
observe a zero row count. A partial unique index guarantees that at most one
run per source is ``running`` or ``continuing``.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paysync.ingest.metrics import record_sync_paused, record_sync_run_status
from paysync.models import ACTIVE_SYNC_STATUSES, SyncRun, SyncRunStatus, SystemSetting, as_utc, db, utc_now

logger = logging.getLogger(__name__)

DEFAULT_STALE_MINUTES = 30
SYNC_PAUSED_KEY = "sync_paused"


class SyncConflictError(RuntimeError):
    """Another non-stale run already owns the source."""

    def __init__(self, existing_run_id: int | None, message: str | None = None) -> None:
        super().__init__(message or f"A sync is already in progress (run {existing_run_id}).")
        self.existing_run_id = existing_run_id


class SyncRunNotFoundError(LookupError):
    pass


class SyncRunStateError(RuntimeError):
    """The run exists but is not in a state that allows the requested transition."""

    def __init__(self, run_id: int, status: SyncRunStatus) -> None:
        super().__init__(f"Sync run {run_id} is {status.value}.")
        self.run_id = run_id
        self.status = status


class SyncPausedError(RuntimeError):
    pass


class Decision(str, enum.Enum):
    CONTINUE = "continue"
    COMPLETE = "complete"


@dataclass(frozen=True)
class SyncParams:
    """Run parameters, persisted in ``metadata_json`` so every step sees the same range."""

    start: datetime
    end: datetime
    fetch_all: bool = True
    max_window_days: int = 31
    page_size: int = 100
    first_page: int = 1

    def to_metadata(self) -> dict[str, Any]:
        return {
            "startDate": self.start.isoformat(),
            "endDate": self.end.isoformat(),
            "fetchAll": self.fetch_all,
            "maxWindowDays": self.max_window_days,
            "pageSize": self.page_size,
            "firstPage": self.first_page,
        }

    @classmethod
    def from_metadata(cls, metadata: Mapping[str, Any]) -> "SyncParams":
        return cls(
            start=datetime.fromisoformat(metadata["startDate"]),
            end=datetime.fromisoformat(metadata["endDate"]),
            fetch_all=bool(metadata.get("fetchAll", True)),
            max_window_days=int(metadata.get("maxWindowDays", 31)),
            page_size=int(metadata.get("pageSize", 100)),
            first_page=int(metadata.get("firstPage", 1)),
        )


@dataclass(frozen=True)
class SyncProgress:
    """
    Progress after completing page ``page`` of chunk ``chunk_index``.

    Counter fields are deltas for that page, not running totals.
    """

    chunk_index: int
    page: int
    total_chunks: int
    total_pages: int
    chunk_start: datetime | None = None
    chunk_end: datetime | None = None
    fetched: int = 0
    inserted: int = 0
    skipped: int = 0

    @property
    def cursor(self) -> tuple[int, int]:
        return (self.chunk_index, self.page)

    @property
    def has_more_pages(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_more_chunks(self) -> bool:
        return self.chunk_index + 1 < self.total_chunks

    def next_cursor(self) -> tuple[int, int]:
        if self.has_more_pages:
            return (self.chunk_index, self.page + 1)
        return (self.chunk_index + 1, 1)

    def to_checkpoint(self, *, now: datetime) -> dict[str, Any]:
        return {
            "page": self.page,
            "chunkIndex": self.chunk_index,
            "chunkStart": self.chunk_start.isoformat() if self.chunk_start else None,
            "chunkEnd": self.chunk_end.isoformat() if self.chunk_end else None,
            "totalChunks": self.total_chunks,
            "totalPages": self.total_pages,
            "lastActivity": now.isoformat(),
        }


def decide_continuation(progress: SyncProgress, *, fetch_all: bool) -> Decision:
    """Continue while pages or chunks remain, but only for exhaustive fetches."""
    if fetch_all and (progress.has_more_pages or progress.has_more_chunks):
        return Decision.CONTINUE
    return Decision.COMPLETE


def checkpoint_cursor(run: SyncRun) -> tuple[int, int]:
    """Cursor of the last completed page, ``(0, 0)`` before any page."""
    return (run.cursor_chunk_index or 0, run.cursor_page or 0)


class SyncRunService:
    """Coordinator for ``SyncRun`` lifecycle transitions."""

    def __init__(self, session: Session | None = None, *, stale_minutes: int = DEFAULT_STALE_MINUTES) -> None:
        self.session = session or db.session
        self.stale_minutes = stale_minutes

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_run(self, run_id: int) -> SyncRun:
        run = self.session.get(SyncRun, run_id, populate_existing=True)
        if run is None:
            raise SyncRunNotFoundError(f"Sync run {run_id} not found.")
        return run

    def find_active_run(self, source: str) -> SyncRun | None:
        return self.session.scalars(
            select(SyncRun)
            .where(SyncRun.source == source, SyncRun.status.in_(ACTIVE_SYNC_STATUSES))
            .order_by(SyncRun.started_at.desc())
            .execution_options(populate_existing=True)
        ).first()

    def list_runs(self, source: str | None = None, *, limit: int = 20) -> list[SyncRun]:
        query = select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(max(1, limit))
        if source:
            query = query.where(SyncRun.source == source)
        return list(self.session.scalars(query.execution_options(populate_existing=True)))

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------
    def start_or_resume(self, source: str, params: SyncParams, *, initial_checkpoint: dict | None = None) -> SyncRun:
        """
        Create a new ``running`` run for ``source``.

        Stale active runs are failed first. A remaining active run raises
        ``SyncConflictError`` carrying its id, as does losing the insert race
        against the partial unique index.
        """
        self.cleanup_stale(source, self.stale_minutes)

        existing = self.find_active_run(source)
        if existing is not None:
            raise SyncConflictError(existing.id)

        now = utc_now()
        run = SyncRun(
            source=source,
            status=SyncRunStatus.RUNNING,
            started_at=now,
            last_activity_at=now,
            total_fetched=0,
            total_inserted=0,
            total_skipped=0,
            cursor_chunk_index=0,
            cursor_page=0,
            checkpoint_json=initial_checkpoint or {"page": 0, "chunkIndex": 0, "lastActivity": now.isoformat()},
            metadata_json=params.to_metadata(),
        )
        self.session.add(run)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            winner = self.find_active_run(source)
            raise SyncConflictError(winner.id if winner else None) from exc

        record_sync_run_status(source, SyncRunStatus.RUNNING.value)
        logger.info(
            "Sync run started",
            extra={"sync_run_id": run.id, "sync_source": source, "sync_params": params.to_metadata()},
        )
        return run

    def resume(self, run_id: int) -> SyncRun:
        """Claim a ``continuing`` run for the next bounded step."""
        result = self.session.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status == SyncRunStatus.CONTINUING)
            .values(status=SyncRunStatus.RUNNING, last_activity_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        run = self.get_run(run_id)
        if result.rowcount == 0:
            raise SyncRunStateError(run.id, run.status)
        return run

    # ------------------------------------------------------------------
    # Checkpointing
    # ------------------------------------------------------------------
    def checkpoint(self, run_id: int, progress: SyncProgress, *, commit: bool = True) -> bool:
        """
        Persist ``progress`` for ``run_id``.

        Counters advance only when the progress cursor is beyond the stored
        one, so repeating a checkpoint never double counts. Returns ``False``
        when the run is no longer active, which tells the caller to stop.
        """
        now = utc_now()
        chunk_index, page = progress.cursor
        is_ahead = or_(
            SyncRun.cursor_chunk_index < chunk_index,
            and_(SyncRun.cursor_chunk_index == chunk_index, SyncRun.cursor_page < page),
        )

        advanced = self.session.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status.in_(ACTIVE_SYNC_STATUSES), is_ahead)
            .values(
                checkpoint_json=progress.to_checkpoint(now=now),
                cursor_chunk_index=chunk_index,
                cursor_page=page,
                total_fetched=SyncRun.total_fetched + progress.fetched,
                total_inserted=SyncRun.total_inserted + progress.inserted,
                total_skipped=SyncRun.total_skipped + progress.skipped,
                last_activity_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount

        active = bool(advanced)
        if not advanced:
            touched = self.session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status.in_(ACTIVE_SYNC_STATUSES))
                .values(last_activity_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            active = bool(touched)
            if active:
                logger.debug(
                    "Checkpoint already recorded; counters unchanged",
                    extra={"sync_run_id": run_id, "sync_cursor": progress.cursor},
                )
        if commit:
            self.session.commit()
        return active

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _transition(
        self,
        run_id: int,
        target: SyncRunStatus,
        *,
        expected: tuple[SyncRunStatus, ...] = ACTIVE_SYNC_STATUSES,
        error_message: str | None = None,
    ) -> bool:
        now = utc_now()
        values: dict[str, Any] = {"status": target, "last_activity_at": now}
        if target not in ACTIVE_SYNC_STATUSES:
            values["completed_at"] = now
        if error_message is not None:
            values["error_message"] = error_message[:2000]
        changed = self.session.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status.in_(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.session.commit()
        if changed:
            run = self.get_run(run_id)
            record_sync_run_status(run.source, target.value)
            logger.info(
                "Sync run transitioned",
                extra={"sync_run_id": run_id, "sync_source": run.source, "sync_status": target.value},
            )
        return bool(changed)

    def mark_continuing(self, run_id: int) -> bool:
        return self._transition(run_id, SyncRunStatus.CONTINUING, expected=(SyncRunStatus.RUNNING,))

    def complete(self, run_id: int) -> bool:
        return self._transition(run_id, SyncRunStatus.COMPLETED)

    def fail(self, run_id: int, message: str) -> bool:
        self.session.rollback()
        return self._transition(run_id, SyncRunStatus.FAILED, error_message=message)

    def cancel_run(self, run_id: int, *, reason: str = "Cancelled by operator") -> bool:
        return self._transition(run_id, SyncRunStatus.CANCELLED, error_message=reason)

    def cancel_all(self, source: str, *, reason: str = "Cancelled by operator") -> int:
        """Force every active run of ``source`` to ``cancelled``."""
        now = utc_now()
        cancelled = self.session.execute(
            update(SyncRun)
            .where(SyncRun.source == source, SyncRun.status.in_(ACTIVE_SYNC_STATUSES))
            .values(status=SyncRunStatus.CANCELLED, completed_at=now, last_activity_at=now, error_message=reason)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.session.commit()
        if cancelled:
            record_sync_run_status(source, SyncRunStatus.CANCELLED.value)
            logger.warning("Cancelled active sync runs", extra={"sync_source": source, "sync_cancelled": cancelled})
        return cancelled

    def cleanup_stale(self, source: str | None = None, threshold_minutes: int | None = None) -> int:
        """Fail active runs with no checkpoint activity within the threshold."""
        minutes = threshold_minutes or self.stale_minutes
        now = utc_now()
        cutoff = now - timedelta(minutes=minutes)
        query = update(SyncRun).where(
            SyncRun.status.in_(ACTIVE_SYNC_STATUSES),
            SyncRun.last_activity_at < cutoff,
        )
        if source:
            query = query.where(SyncRun.source == source)
        swept = self.session.execute(
            query.values(
                status=SyncRunStatus.FAILED,
                completed_at=now,
                error_message=f"Marked stale: no checkpoint activity for {minutes} minutes.",
            ).execution_options(synchronize_session=False)
        ).rowcount
        self.session.commit()
        if swept:
            record_sync_run_status(source or "all", "stale")
            logger.warning(
                "Stale sync runs marked failed",
                extra={"sync_source": source, "sync_stale_count": swept, "sync_stale_minutes": minutes},
            )
        return swept

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------
    def summarize(self, run: SyncRun) -> dict[str, Any]:
        started_at = as_utc(run.started_at)
        completed_at = as_utc(run.completed_at)
        end_reference = completed_at or datetime.now(timezone.utc)
        return {
            "syncRunId": run.id,
            "source": run.source,
            "status": run.status.value,
            "startedAt": started_at.isoformat() if started_at else None,
            "completedAt": completed_at.isoformat() if completed_at else None,
            "lastActivityAt": as_utc(run.last_activity_at).isoformat() if run.last_activity_at else None,
            "totalFetched": run.total_fetched,
            "totalInserted": run.total_inserted,
            "totalSkipped": run.total_skipped,
            "checkpoint": run.checkpoint_json or {},
            "metadata": run.metadata_json or {},
            "errorMessage": run.error_message,
            "durationMs": int((end_reference - started_at).total_seconds() * 1000) if started_at else None,
        }


def is_sync_paused(session: Session | None = None) -> bool:
    """Read the operator kill switch; never cached between calls."""
    session = session or db.session
    setting = session.get(SystemSetting, SYNC_PAUSED_KEY, populate_existing=True)
    value = setting.value_json if setting is not None else None
    if isinstance(value, Mapping):
        value = value.get("paused")
    if isinstance(value, str):
        paused = value.strip().lower() in ("1", "true", "yes", "on")
    else:
        paused = bool(value)
    record_sync_paused(paused)
    return paused


def set_sync_paused(paused: bool, session: Session | None = None) -> None:
    session = session or db.session
    setting = session.get(SystemSetting, SYNC_PAUSED_KEY)
    if setting is None:
        setting = SystemSetting(key=SYNC_PAUSED_KEY)
        session.add(setting)
    setting.value_json = bool(paused)
    session.commit()
    record_sync_paused(paused)
    logger.warning("Sync kill switch updated", extra={"sync_paused": bool(paused)})
