from datetime import datetime, timedelta, timezone

import pytest

from paysync.ingest.pipeline.chunking import (
    TIME_UNIT,
    chunk_date_range,
    clamp_sync_window,
    format_api_timestamp,
)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_range_within_window_is_single_chunk():
    chunks = chunk_date_range(_utc(2024, 1, 1), _utc(2024, 1, 20), 31)

    assert len(chunks) == 1
    assert chunks[0].index == 0
    assert chunks[0].start == _utc(2024, 1, 1)
    assert chunks[0].end == _utc(2024, 1, 20)


def test_ninety_days_split_into_ordered_non_overlapping_chunks():
    start = _utc(2024, 1, 1)
    end = start + timedelta(days=90)

    chunks = chunk_date_range(start, end, 31)

    assert len(chunks) == 3
    assert chunks[0].start == start
    assert chunks[-1].end == end
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start == previous.end + TIME_UNIT
        assert current.index == previous.index + 1
    for chunk in chunks:
        assert chunk.end - chunk.start <= timedelta(days=31)


def test_ninety_three_days_split_on_window_boundaries():
    start = _utc(2024, 1, 1)
    end = start + timedelta(days=93)

    chunks = chunk_date_range(start, end, 31)

    day_31 = start + timedelta(days=31)
    day_62 = day_31 + TIME_UNIT + timedelta(days=31)
    assert [(chunk.start, chunk.end) for chunk in chunks] == [
        (start, day_31),
        (day_31 + TIME_UNIT, day_62),
        (day_62 + TIME_UNIT, end),
    ]


def test_range_of_exactly_one_window_is_single_chunk():
    start = _utc(2024, 1, 1)
    end = start + timedelta(days=31)

    assert [(chunk.start, chunk.end) for chunk in chunk_date_range(start, end, 31)] == [(start, end)]


def test_chunking_is_deterministic():
    start = _utc(2023, 5, 1, 8, 30)
    end = _utc(2023, 9, 12, 17)

    assert chunk_date_range(start, end, 31) == chunk_date_range(start, end, 31)


def test_naive_datetimes_are_treated_as_utc():
    chunks = chunk_date_range(datetime(2024, 1, 1), datetime(2024, 1, 2), 31)

    assert chunks[0].start.tzinfo is not None
    assert chunks[0].start == _utc(2024, 1, 1)


def test_start_equal_to_end_yields_one_chunk():
    moment = _utc(2024, 6, 1, 12)

    chunks = chunk_date_range(moment, moment, 31)

    assert [(chunk.start, chunk.end) for chunk in chunks] == [(moment, moment)]


@pytest.mark.parametrize("window", [0, -3])
def test_rejects_non_positive_window(window):
    with pytest.raises(ValueError):
        chunk_date_range(_utc(2024, 1, 1), _utc(2024, 1, 2), window)


def test_rejects_start_after_end():
    with pytest.raises(ValueError):
        chunk_date_range(_utc(2024, 2, 1), _utc(2024, 1, 1), 31)


def test_clamp_defaults_to_recent_range_before_safety_margin():
    now = _utc(2024, 6, 15, 12, 0, 0)

    start, end = clamp_sync_window(
        None,
        None,
        now=now,
        default_range_days=31,
        max_lookback_days=3 * 365 - 7,
        end_safety_minutes=10,
    )

    assert end == now - timedelta(minutes=10)
    assert start == end - timedelta(days=31)


def test_clamp_pulls_future_end_back_and_limits_lookback():
    now = _utc(2024, 6, 15, 12, 0, 0)

    start, end = clamp_sync_window(
        _utc(2019, 1, 1),
        _utc(2025, 1, 1),
        now=now,
        default_range_days=31,
        max_lookback_days=100,
        end_safety_minutes=10,
    )

    assert end == now - timedelta(minutes=10)
    assert start == now - timedelta(days=100)


def test_clamp_rejects_inverted_window():
    now = _utc(2024, 6, 15)
    with pytest.raises(ValueError, match="startDate"):
        clamp_sync_window(
            _utc(2024, 6, 10),
            _utc(2024, 6, 1),
            now=now,
            default_range_days=31,
            max_lookback_days=365,
            end_safety_minutes=10,
        )


def test_api_timestamps_have_no_milliseconds():
    value = datetime(2024, 3, 1, 8, 5, 9, 123456, tzinfo=timezone(timedelta(hours=2)))

    assert format_api_timestamp(value) == "2024-03-01T06:05:09Z"
