from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from paysync.ingest.pipeline.run_service import (
    Decision,
    SyncConflictError,
    SyncParams,
    SyncProgress,
    SyncRunNotFoundError,
    SyncRunService,
    SyncRunStateError,
    checkpoint_cursor,
    decide_continuation,
    is_sync_paused,
    set_sync_paused,
)
from paysync.models import SyncRun, SyncRunStatus, db, utc_now

PARAMS = SyncParams(
    start=datetime(2024, 1, 1, tzinfo=timezone.utc),
    end=datetime(2024, 3, 31, tzinfo=timezone.utc),
)


def _progress(chunk_index, page, *, total_pages=3, total_chunks=3, fetched=10, inserted=8, skipped=2):
    return SyncProgress(
        chunk_index=chunk_index,
        page=page,
        total_chunks=total_chunks,
        total_pages=total_pages,
        fetched=fetched,
        inserted=inserted,
        skipped=skipped,
    )


@pytest.fixture
def runs(app):
    return SyncRunService(stale_minutes=30)


def test_params_round_trip_through_metadata():
    params = SyncParams(start=PARAMS.start, end=PARAMS.end, fetch_all=False, max_window_days=7, first_page=3)

    metadata = params.to_metadata()

    assert metadata["fetchAll"] is False
    assert metadata["startDate"] == "2024-01-01T00:00:00+00:00"
    assert SyncParams.from_metadata(metadata) == params


def test_next_cursor_walks_pages_then_chunks():
    assert _progress(0, 1).next_cursor() == (0, 2)
    assert _progress(0, 3).next_cursor() == (1, 1)
    assert _progress(1, 1, total_pages=0).next_cursor() == (2, 1)


def test_decide_continuation():
    assert decide_continuation(_progress(0, 1), fetch_all=True) is Decision.CONTINUE
    assert decide_continuation(_progress(0, 3), fetch_all=True) is Decision.CONTINUE
    assert decide_continuation(_progress(2, 3), fetch_all=True) is Decision.COMPLETE
    assert decide_continuation(_progress(0, 1), fetch_all=False) is Decision.COMPLETE


def test_start_creates_running_run(runs):
    run = runs.start_or_resume("paypal", PARAMS)

    assert run.status is SyncRunStatus.RUNNING
    assert run.metadata_json == PARAMS.to_metadata()
    assert checkpoint_cursor(run) == (0, 0)
    assert runs.find_active_run("paypal").id == run.id


def test_second_start_conflicts_with_active_run(runs):
    first = runs.start_or_resume("paypal", PARAMS)

    with pytest.raises(SyncConflictError) as excinfo:
        runs.start_or_resume("paypal", PARAMS)

    assert excinfo.value.existing_run_id == first.id


def test_other_sources_do_not_conflict(runs):
    runs.start_or_resume("paypal", PARAMS)

    assert runs.start_or_resume("stripe", PARAMS).status is SyncRunStatus.RUNNING


def test_database_rejects_two_active_runs_per_source(app):
    now = utc_now()
    db.session.add(SyncRun(source="paypal", status=SyncRunStatus.RUNNING, started_at=now, last_activity_at=now))
    db.session.commit()
    db.session.add(SyncRun(source="paypal", status=SyncRunStatus.CONTINUING, started_at=now, last_activity_at=now))

    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_stale_run_is_swept_before_start(runs):
    stale = runs.start_or_resume("paypal", PARAMS)
    stale.last_activity_at = utc_now() - timedelta(minutes=45)
    db.session.commit()

    fresh = runs.start_or_resume("paypal", PARAMS)

    swept = runs.get_run(stale.id)
    assert fresh.id != stale.id
    assert swept.status is SyncRunStatus.FAILED
    assert "stale" in swept.error_message.lower()


def test_cleanup_stale_leaves_recent_runs(runs):
    run = runs.start_or_resume("paypal", PARAMS)

    assert runs.cleanup_stale("paypal") == 0
    assert runs.get_run(run.id).status is SyncRunStatus.RUNNING


def test_checkpoint_advances_counters_once(runs):
    run = runs.start_or_resume("paypal", PARAMS)

    assert runs.checkpoint(run.id, _progress(0, 1))
    assert runs.checkpoint(run.id, _progress(0, 1))
    assert runs.checkpoint(run.id, _progress(0, 2))

    stored = runs.get_run(run.id)
    assert stored.total_fetched == 20
    assert stored.total_inserted == 16
    assert stored.total_skipped == 4
    assert checkpoint_cursor(stored) == (0, 2)
    assert stored.checkpoint_json["page"] == 2
    assert stored.checkpoint_json["totalPages"] == 3


def test_checkpoint_never_moves_backwards(runs):
    run = runs.start_or_resume("paypal", PARAMS)
    runs.checkpoint(run.id, _progress(1, 1))

    runs.checkpoint(run.id, _progress(0, 3))

    stored = runs.get_run(run.id)
    assert checkpoint_cursor(stored) == (1, 1)
    assert stored.total_fetched == 10


def test_checkpoint_on_cancelled_run_reports_inactive(runs):
    run = runs.start_or_resume("paypal", PARAMS)
    assert runs.cancel_run(run.id)

    assert runs.checkpoint(run.id, _progress(0, 1)) is False
    assert runs.get_run(run.id).total_fetched == 0


def test_continuing_then_resume(runs):
    run = runs.start_or_resume("paypal", PARAMS)

    assert runs.mark_continuing(run.id)
    assert runs.get_run(run.id).status is SyncRunStatus.CONTINUING

    resumed = runs.resume(run.id)
    assert resumed.status is SyncRunStatus.RUNNING

    with pytest.raises(SyncRunStateError) as excinfo:
        runs.resume(run.id)
    assert excinfo.value.status is SyncRunStatus.RUNNING


def test_resume_unknown_run(runs):
    with pytest.raises(SyncRunNotFoundError):
        runs.resume(4242)


def test_terminal_runs_do_not_transition(runs):
    run = runs.start_or_resume("paypal", PARAMS)
    assert runs.complete(run.id)

    assert not runs.fail(run.id, "late failure")
    assert not runs.mark_continuing(run.id)
    assert not runs.cancel_run(run.id)
    stored = runs.get_run(run.id)
    assert stored.status is SyncRunStatus.COMPLETED
    assert stored.completed_at is not None


def test_cancel_all_only_touches_active_runs(runs):
    done = runs.start_or_resume("paypal", PARAMS)
    runs.complete(done.id)
    active = runs.start_or_resume("paypal", PARAMS)

    assert runs.cancel_all("paypal") == 1

    assert runs.get_run(active.id).status is SyncRunStatus.CANCELLED
    assert runs.get_run(done.id).status is SyncRunStatus.COMPLETED
    assert runs.find_active_run("paypal") is None


def test_list_and_summarize(runs):
    first = runs.start_or_resume("paypal", PARAMS)
    runs.complete(first.id)
    second = runs.start_or_resume("paypal", PARAMS)

    listed = runs.list_runs("paypal", limit=10)
    summary = runs.summarize(listed[0])

    assert [run.id for run in listed] == [second.id, first.id]
    assert summary["syncRunId"] == second.id
    assert summary["status"] == "running"
    assert summary["metadata"]["fetchAll"] is True
    assert summary["durationMs"] >= 0


def test_pause_flag_round_trip(app):
    assert is_sync_paused() is False

    set_sync_paused(True)
    assert is_sync_paused() is True

    set_sync_paused(False)
    assert is_sync_paused() is False
