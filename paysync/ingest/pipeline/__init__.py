"""Ingest pipeline helpers."""

from __future__ import annotations

from .chunking import DateChunk, chunk_date_range, clamp_sync_window, format_api_timestamp
from .normalize import (
    NormalizedRecord,
    map_payment_status,
    normalize_csv_transaction,
    normalize_email,
    normalize_paypal_transaction,
    normalize_phone,
    to_minor_units,
)
from .upsert import UpsertSummary, dedupe_records, upsert_transactions
from .customers import CustomerFields, recalculate_total_spend, upsert_customer
from .staging import (
    ImportRunNotFoundError,
    ImportRunStateError,
    StagingSummary,
    create_import_run,
    stage_csv_chunk,
    stage_csv_upload,
)

__all__ = [
    "DateChunk",
    "chunk_date_range",
    "clamp_sync_window",
    "format_api_timestamp",
    "NormalizedRecord",
    "map_payment_status",
    "normalize_csv_transaction",
    "normalize_email",
    "normalize_paypal_transaction",
    "normalize_phone",
    "to_minor_units",
    "UpsertSummary",
    "dedupe_records",
    "upsert_transactions",
    "CustomerFields",
    "recalculate_total_spend",
    "upsert_customer",
    "ImportRunNotFoundError",
    "ImportRunStateError",
    "StagingSummary",
    "create_import_run",
    "stage_csv_chunk",
    "stage_csv_upload",
]
