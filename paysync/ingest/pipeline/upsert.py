"""
Idempotent batch persistence of normalised transactions.

Records are deduplicated by natural key, split into fixed-size sub-batches and
written with ``INSERT ... ON CONFLICT (source, external_id) DO UPDATE``, so
re-ingesting a range overwrites rows instead of duplicating them. Each
sub-batch runs inside its own SAVEPOINT; a failing sub-batch is rolled back,
logged and counted while the remaining sub-batches continue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paysync.ingest.metrics import record_upsert_batch, record_upsert_duplicates
from paysync.models import Transaction, db, utc_now

from .normalize import NormalizedRecord

logger = logging.getLogger(__name__)

BATCH_SIZE = 500
CONFLICT_TARGET = ("source", "external_id")
_UPDATE_COLUMNS = (
    "customer_email",
    "amount_minor_units",
    "currency",
    "status",
    "occurred_at",
    "metadata_json",
    "updated_at",
)

_DIALECT_INSERTS: dict[str, Callable] = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


@dataclass
class UpsertSummary:
    received: int = 0
    unique: int = 0
    skipped_duplicate: int = 0
    upserted: int = 0
    failed: int = 0
    batches: int = 0
    failed_batches: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "UpsertSummary") -> None:
        self.received += other.received
        self.unique += other.unique
        self.skipped_duplicate += other.skipped_duplicate
        self.upserted += other.upserted
        self.failed += other.failed
        self.batches += other.batches
        self.failed_batches += other.failed_batches
        self.errors.extend(other.errors)

    def as_dict(self) -> dict[str, object]:
        return {
            "received": self.received,
            "unique": self.unique,
            "skipped_duplicate": self.skipped_duplicate,
            "upserted": self.upserted,
            "failed": self.failed,
            "batches": self.batches,
            "failed_batches": self.failed_batches,
            "errors": list(self.errors),
        }


def dedupe_records(records: Iterable[NormalizedRecord]) -> tuple[list[NormalizedRecord], int]:
    """
    Collapse records sharing a natural key; the last occurrence wins.

    Returns the unique records (first-seen order) and the collision count.
    """
    unique: dict[tuple[str, str], NormalizedRecord] = {}
    collisions = 0
    for record in records:
        if record.natural_key in unique:
            collisions += 1
        unique[record.natural_key] = record
    return list(unique.values()), collisions


def chunk_records(records: Sequence[NormalizedRecord], batch_size: int) -> Iterable[Sequence[NormalizedRecord]]:
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1.")
    for offset in range(0, len(records), batch_size):
        yield records[offset : offset + batch_size]


def _build_upsert(session: Session, rows: list[dict]):
    dialect = session.get_bind().dialect.name
    insert_fn = _DIALECT_INSERTS.get(dialect)
    if insert_fn is None:
        raise NotImplementedError(f"Upsert is not supported for the '{dialect}' dialect.")
    statement = insert_fn(Transaction).values(rows)
    return statement.on_conflict_do_update(
        index_elements=list(CONFLICT_TARGET),
        set_={column: statement.excluded[column] for column in _UPDATE_COLUMNS},
    )


def upsert_transactions(
    records: Iterable[NormalizedRecord],
    *,
    batch_size: int = BATCH_SIZE,
    session: Session | None = None,
) -> UpsertSummary:
    """
    Persist ``records`` idempotently. The caller owns the outer transaction
    and decides when to commit.
    """
    session = session or db.session
    records = list(records)
    unique, collisions = dedupe_records(records)
    summary = UpsertSummary(received=len(records), unique=len(unique), skipped_duplicate=collisions)
    record_upsert_duplicates(collisions)

    for batch_number, batch in enumerate(chunk_records(unique, batch_size), start=1):
        now = utc_now()
        rows = [dict(record.as_row(), created_at=now, updated_at=now) for record in batch]
        summary.batches += 1
        try:
            with session.begin_nested():
                session.execute(_build_upsert(session, rows))
        except SQLAlchemyError as exc:
            summary.failed += len(rows)
            summary.failed_batches += 1
            message = f"Batch {batch_number}: {exc.__class__.__name__}: {exc}"
            summary.errors.append(message[:500])
            record_upsert_batch(status="failure", record_count=len(rows))
            logger.error(
                "Transaction upsert batch failed",
                extra={"upsert_batch": batch_number, "upsert_batch_size": len(rows)},
                exc_info=True,
            )
            continue
        summary.upserted += len(rows)
        record_upsert_batch(status="success", record_count=len(rows))

    logger.info(
        "Transaction upsert finished",
        extra={
            "upsert_received": summary.received,
            "upsert_unique": summary.unique,
            "upsert_skipped_duplicate": summary.skipped_duplicate,
            "upsert_failed": summary.failed,
        },
    )
    return summary
