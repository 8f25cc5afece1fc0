"""
Date-range chunking for window-limited report APIs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# The report API works at one-second resolution; chunks are separated by one
# unit so a record sitting on a boundary is fetched exactly once.
TIME_UNIT = timedelta(seconds=1)


@dataclass(frozen=True)
class DateChunk:
    index: int
    start: datetime
    end: datetime

    def as_dict(self) -> dict[str, str | int]:
        return {"index": self.index, "start": self.start.isoformat(), "end": self.end.isoformat()}


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def chunk_date_range(start: datetime, end: datetime, max_window_days: int) -> list[DateChunk]:
    """
    Split ``[start, end]`` into ordered, non-overlapping chunks no wider than
    ``max_window_days``.

    The output depends only on the inputs, so a run can recompute its chunk
    list when it resumes from a checkpoint.
    """
    if max_window_days < 1:
        raise ValueError("max_window_days must be at least 1.")
    start = _ensure_utc(start)
    end = _ensure_utc(end)
    if start > end:
        raise ValueError("start must not be after end.")

    window = timedelta(days=max_window_days)
    chunks: list[DateChunk] = []
    chunk_start = start
    while chunk_start <= end:
        chunk_end = min(chunk_start + window, end)
        chunks.append(DateChunk(index=len(chunks), start=chunk_start, end=chunk_end))
        chunk_start = chunk_end + TIME_UNIT
    return chunks


def clamp_sync_window(
    start: datetime | None,
    end: datetime | None,
    *,
    now: datetime,
    default_range_days: int,
    max_lookback_days: int,
    end_safety_minutes: int,
) -> tuple[datetime, datetime]:
    """
    Resolve the requested sync window against the API's limits.

    ``end`` is pulled back to ``now - end_safety_minutes`` because the API
    rejects future-dated end dates; ``start`` defaults to ``default_range_days``
    before ``end`` and never reaches further back than ``max_lookback_days``.
    """
    now = _ensure_utc(now)
    safe_end = now - timedelta(minutes=end_safety_minutes)
    resolved_end = min(_ensure_utc(end), safe_end) if end else safe_end
    resolved_start = _ensure_utc(start) if start else resolved_end - timedelta(days=default_range_days)

    earliest = now - timedelta(days=max_lookback_days)
    if resolved_start < earliest:
        resolved_start = earliest
    if resolved_start > resolved_end:
        raise ValueError("startDate must be before endDate.")
    return resolved_start.replace(microsecond=0), resolved_end.replace(microsecond=0)


def format_api_timestamp(value: datetime) -> str:
    """Render a timestamp as ``YYYY-MM-DDTHH:MM:SSZ`` (no milliseconds)."""
    return _ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")
