"""Prometheus metrics helpers for sync and import pipelines."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_sync_pages_counter = Counter(
    "paysync_sync_pages_total",
    "Report pages fetched by source and outcome.",
    ["source", "outcome"],
)
_sync_retries_counter = Counter(
    "paysync_sync_retries_total",
    "Transient API failures that triggered a retry.",
    ["source"],
)
_sync_runs_counter = Counter(
    "paysync_sync_runs_total",
    "Sync runs reaching a status, by source.",
    ["source", "status"],
)
_sync_step_duration = Histogram(
    "paysync_sync_step_duration_seconds",
    "Wall-clock duration of one bounded sync step.",
    ["source"],
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 45, 60, 120),
)
_continuation_counter = Counter(
    "paysync_continuation_dispatch_total",
    "Continuation dispatch attempts by outcome.",
    ["outcome"],
)
_upsert_batches_counter = Counter(
    "paysync_upsert_batches_total",
    "Upsert sub-batches by status.",
    ["status"],
)
_upsert_records_counter = Counter(
    "paysync_upsert_records_total",
    "Normalized records seen by the batch writer, by outcome.",
    ["outcome"],
)
_staging_rows_counter = Counter(
    "paysync_staging_rows_total",
    "CSV rows handled by the staging writer, by outcome.",
    ["outcome"],
)
_merge_rows_counter = Counter(
    "paysync_merge_rows_total",
    "Staged rows reaching a terminal merge status.",
    ["outcome"],
)
_sync_paused_gauge = Gauge(
    "paysync_sync_paused",
    "Whether the operator kill switch is engaged (1) or not (0).",
)


def record_sync_page(source: str, *, outcome: Literal["records", "empty"]) -> None:
    _sync_pages_counter.labels(source=source, outcome=outcome).inc()


def record_sync_retry(source: str) -> None:
    _sync_retries_counter.labels(source=source).inc()


def record_sync_run_status(source: str, status: str) -> None:
    _sync_runs_counter.labels(source=source, status=status).inc()


def record_sync_step(source: str, duration_seconds: float) -> None:
    _sync_step_duration.labels(source=source).observe(duration_seconds)


def record_continuation_dispatch(outcome: Literal["queued", "failed"]) -> None:
    _continuation_counter.labels(outcome=outcome).inc()


def record_upsert_batch(*, status: Literal["success", "failure"], record_count: int) -> None:
    _upsert_batches_counter.labels(status=status).inc()
    _upsert_records_counter.labels(outcome="upserted" if status == "success" else "failed").inc(record_count)


def record_upsert_duplicates(count: int) -> None:
    if count:
        _upsert_records_counter.labels(outcome="skipped_duplicate").inc(count)


def record_staging_rows(*, staged: int, skipped: int) -> None:
    if staged:
        _staging_rows_counter.labels(outcome="staged").inc(staged)
    if skipped:
        _staging_rows_counter.labels(outcome="skipped").inc(skipped)


def record_merge_rows(outcome: Literal["merged", "skipped", "error"], count: int) -> None:
    if count:
        _merge_rows_counter.labels(outcome=outcome).inc(count)


def record_sync_paused(paused: bool) -> None:
    _sync_paused_gauge.set(1 if paused else 0)
