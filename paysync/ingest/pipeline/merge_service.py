"""
Background merge of staged CSV rows into canonical customers.

Rows are grouped by normalised email (phone when there is no email) and each
group is merged and committed on its own, so an interrupted merge resumes
from the rows that are still ``pending``. Row transitions are conditional on
``pending``; a row is never merged twice even if two workers race.
"""

from __future__ import annotations

import dataclasses
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, Sequence

from flask import current_app, has_app_context
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.source_fields import TRANSACTION_SOURCES, get_source_fields, normalize_header
from paysync.ingest.metrics import record_merge_rows
from paysync.models import ImportRun, ImportRunStatus, StagingRow, StagingRowStatus, as_utc, db, utc_now

from .customers import CustomerFields, find_customer, recalculate_total_spend, union_tags, upsert_customer
from .normalize import NormalizedRecord, first_value, normalize_csv_transaction, normalize_email, normalize_phone
from .staging import ImportRunNotFoundError, ImportRunStateError
from .upsert import upsert_transactions

logger = logging.getLogger(__name__)

MERGEABLE_STATUSES: tuple[ImportRunStatus, ...] = (ImportRunStatus.STAGED, ImportRunStatus.FAILED)
SKIP_MESSAGE = "No normalizable email or phone."


@dataclass
class MergeSummary:
    import_id: int
    status: str
    rows_considered: int = 0
    rows_merged: int = 0
    rows_skipped: int = 0
    rows_error: int = 0
    rows_conflict: int = 0
    customers_created: int = 0
    customers_updated: int = 0
    transactions_upserted: int = 0
    already_completed: bool = False

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class _PreparedRow:
    row_id: int
    row_number: int
    email: str | None
    phone: str | None
    full_name: str | None
    tags: list[str]
    external_ids: dict[str, str]
    transaction: NormalizedRecord | None


def _split_tags(value: str | None) -> list[str]:
    if not value:
        return []
    return [tag.strip() for tag in value.replace(";", ",").split(",") if tag.strip()]


def prepare_row(row: StagingRow) -> _PreparedRow:
    """Normalise the identity and optional fields of a staged row."""
    fields = get_source_fields(row.source_type)
    lowered = {normalize_header(key): value for key, value in (row.raw_data or {}).items() if key}
    email = normalize_email(row.email) or normalize_email(first_value(lowered, fields.email))
    phone = normalize_phone(row.phone) or normalize_phone(first_value(lowered, fields.phone))

    external_ids: dict[str, str] = {}
    for system, candidates in fields.external_ids.items():
        value = first_value(lowered, candidates)
        if value:
            external_ids[system] = value

    transaction = None
    if row.source_type in TRANSACTION_SOURCES:
        transaction = normalize_csv_transaction(row.raw_data or {}, row.source_type)
        if transaction is not None and transaction.customer_email is None and email:
            transaction = dataclasses.replace(transaction, customer_email=email)

    return _PreparedRow(
        row_id=row.id,
        row_number=row.row_number,
        email=email,
        phone=phone,
        full_name=(row.full_name or "").strip() or None,
        tags=_split_tags(first_value(lowered, fields.tags)),
        external_ids=external_ids,
        transaction=transaction,
    )


def group_rows(rows: Iterable[_PreparedRow]) -> "OrderedDict[tuple[str, str], list[_PreparedRow]]":
    """Group rows by normalised email, falling back to phone."""
    groups: OrderedDict[tuple[str, str], list[_PreparedRow]] = OrderedDict()
    for row in rows:
        key = ("email", row.email) if row.email else ("phone", row.phone)
        groups.setdefault(key, []).append(row)
    return groups


def merge_group_fields(key: tuple[str, str], rows: Sequence[_PreparedRow]) -> CustomerFields:
    """First non-null wins for name, phone and each external id; tags are unioned."""
    kind, value = key
    merged = CustomerFields(email=value if kind == "email" else None)
    for row in rows:
        merged.phone = merged.phone or row.phone
        merged.full_name = merged.full_name or row.full_name
        for system, external_id in row.external_ids.items():
            merged.external_ids.setdefault(system, external_id)
    merged.tags = union_tags(*(row.tags for row in rows))
    return merged


class MergeService:
    """Moves an import's ``pending`` staging rows into canonical customers."""

    def __init__(self, session: Session | None = None, *, stale_minutes: int | None = None) -> None:
        self.session = session or db.session
        if stale_minutes is None:
            stale_minutes = int(current_app.config.get("IMPORT_STALE_MINUTES", 30)) if has_app_context() else 30
        self.stale_minutes = stale_minutes

    def is_stale(self, run: ImportRun) -> bool:
        """True for a ``processing`` import whose merge stopped reporting progress."""
        if run.status != ImportRunStatus.PROCESSING:
            return False
        last_activity = as_utc(run.last_activity_at)
        return last_activity is None or last_activity < utc_now() - timedelta(minutes=self.stale_minutes)

    def _acquire(self, import_id: int) -> tuple[ImportRun, bool]:
        """
        Claim ``import_id`` for merging.

        ``staged`` and ``failed`` imports are claimed directly. A ``processing``
        import is reclaimed once its merge has been silent for
        ``stale_minutes``; the worker that held it is presumed dead.
        """
        now = utc_now()
        previous = self.session.scalar(select(ImportRun.status).where(ImportRun.id == import_id))
        claimable = or_(
            ImportRun.status.in_(MERGEABLE_STATUSES),
            and_(
                ImportRun.status == ImportRunStatus.PROCESSING,
                ImportRun.last_activity_at < now - timedelta(minutes=self.stale_minutes),
            ),
        )
        acquired = self.session.execute(
            update(ImportRun)
            .where(ImportRun.id == import_id, claimable)
            .values(status=ImportRunStatus.PROCESSING, error_message=None, last_activity_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.session.commit()
        run = self.session.get(ImportRun, import_id, populate_existing=True)
        if run is None:
            raise ImportRunNotFoundError(f"Import {import_id} not found.")
        if acquired and previous == ImportRunStatus.PROCESSING:
            logger.warning(
                "Reclaimed stale merge",
                extra={"import_id": import_id, "import_stale_minutes": self.stale_minutes},
            )
        if acquired or run.status == ImportRunStatus.COMPLETED:
            return run, bool(acquired)
        raise ImportRunStateError(import_id, run.status)

    def _record_progress(self, import_id: int, *, merged: int = 0, skipped: int = 0, error: int = 0, conflict: int = 0) -> None:
        # Counters move in the same commit as the rows they count.
        self.session.execute(
            update(ImportRun)
            .where(ImportRun.id == import_id)
            .values(
                rows_merged=ImportRun.rows_merged + merged,
                rows_skipped=ImportRun.rows_skipped + skipped,
                rows_error=ImportRun.rows_error + error,
                rows_conflict=ImportRun.rows_conflict + conflict,
                last_activity_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )

    def _finalize_rows(
        self,
        row_ids: Sequence[int],
        status: StagingRowStatus,
        *,
        customer_id: int | None = None,
        error_message: str | None = None,
    ) -> int:
        if not row_ids:
            return 0
        values: dict[str, Any] = {"processing_status": status, "processed_at": utc_now()}
        if customer_id is not None:
            values["merged_customer_id"] = customer_id
        if error_message is not None:
            values["error_message"] = error_message[:2000]
        return self.session.execute(
            update(StagingRow)
            .where(StagingRow.id.in_(list(row_ids)), StagingRow.processing_status == StagingRowStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount

    def _count_conflicts(self, fields: CustomerFields, rows: Sequence[_PreparedRow]) -> int:
        existing = find_customer(self.session, email=fields.email, phone=fields.phone)
        if existing is None:
            return 0
        conflicts = 0
        for row in rows:
            name_differs = bool(existing.full_name and row.full_name and row.full_name != existing.full_name)
            phone_differs = bool(existing.phone_e164 and row.phone and row.phone != existing.phone_e164)
            if name_differs or phone_differs:
                conflicts += 1
        return conflicts

    def _merge_group(self, key: tuple[str, str], rows: Sequence[_PreparedRow], summary: MergeSummary) -> None:
        fields = merge_group_fields(key, rows)
        row_ids = [row.row_id for row in rows]
        transactions = [row.transaction for row in rows if row.transaction is not None]
        try:
            with self.session.begin_nested():
                conflicts = self._count_conflicts(fields, rows)
                result = upsert_customer(fields, session=self.session)
                customer_id = result.customer.id
                if transactions:
                    upserted = upsert_transactions(transactions, session=self.session)
                    summary.transactions_upserted += upserted.upserted
                emails = {fields.email} | {record.customer_email for record in transactions if record.customer_email}
                recalculate_total_spend(emails, session=self.session)
        except SQLAlchemyError as exc:
            message = f"{exc.__class__.__name__}: {exc}"
            errors = self._finalize_rows(row_ids, StagingRowStatus.ERROR, error_message=message)
            summary.rows_error += errors
            self._record_progress(summary.import_id, error=errors)
            self.session.commit()
            logger.error(
                "Customer merge failed for group",
                extra={"import_id": summary.import_id, "merge_group": key[0], "merge_rows": len(row_ids)},
                exc_info=True,
            )
            return

        merged = self._finalize_rows(row_ids, StagingRowStatus.MERGED, customer_id=customer_id)
        summary.rows_merged += merged
        summary.rows_conflict += conflicts
        self._record_progress(summary.import_id, merged=merged, conflict=conflicts)
        if result.created:
            summary.customers_created += 1
        else:
            summary.customers_updated += 1
        self.session.commit()

    def merge_import(self, import_id: int) -> MergeSummary:
        """
        Merge every ``pending`` row of ``import_id``.

        A ``completed`` import is a no-op; one already ``processing`` raises
        ``ImportRunStateError`` until its merge goes stale. On an unexpected error the import is marked
        ``failed`` and unprocessed rows stay ``pending`` for a re-run.
        """
        run, acquired = self._acquire(import_id)
        if not acquired:
            return MergeSummary(
                import_id=import_id,
                status=run.status.value,
                rows_merged=run.rows_merged,
                rows_skipped=run.rows_skipped,
                rows_error=run.rows_error,
                rows_conflict=run.rows_conflict,
                already_completed=True,
            )

        summary = MergeSummary(import_id=import_id, status=ImportRunStatus.PROCESSING.value)
        logger.info("Merge started", extra={"import_id": import_id})
        try:
            pending_rows = self.session.scalars(
                select(StagingRow)
                .where(StagingRow.import_id == import_id, StagingRow.processing_status == StagingRowStatus.PENDING)
                .order_by(StagingRow.row_number)
            ).all()
            prepared = [prepare_row(row) for row in pending_rows]
            summary.rows_considered = len(prepared)

            skipped_ids = [row.row_id for row in prepared if not row.email and not row.phone]
            summary.rows_skipped = self._finalize_rows(skipped_ids, StagingRowStatus.SKIPPED, error_message=SKIP_MESSAGE)
            self._record_progress(import_id, skipped=summary.rows_skipped)
            self.session.commit()

            identified = [row for row in prepared if row.email or row.phone]
            for key, rows in group_rows(identified).items():
                self._merge_group(key, rows, summary)

            self._complete(import_id, summary)
        except Exception as exc:
            self.session.rollback()
            self._fail(import_id, summary, f"{exc.__class__.__name__}: {exc}")
            logger.exception("Merge failed", extra={"import_id": import_id})
            raise

        record_merge_rows("merged", summary.rows_merged)
        record_merge_rows("skipped", summary.rows_skipped)
        record_merge_rows("error", summary.rows_error)
        logger.info(
            "Merge completed",
            extra={
                "import_id": import_id,
                "merge_rows_merged": summary.rows_merged,
                "merge_rows_skipped": summary.rows_skipped,
                "merge_rows_error": summary.rows_error,
                "merge_rows_conflict": summary.rows_conflict,
            },
        )
        return summary

    def _complete(self, import_id: int, summary: MergeSummary) -> None:
        self.session.execute(
            update(ImportRun)
            .where(ImportRun.id == import_id, ImportRun.status == ImportRunStatus.PROCESSING)
            .values(status=ImportRunStatus.COMPLETED, completed_at=utc_now(), last_activity_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        summary.status = ImportRunStatus.COMPLETED.value

    def _fail(self, import_id: int, summary: MergeSummary, message: str) -> None:
        self.session.execute(
            update(ImportRun)
            .where(ImportRun.id == import_id, ImportRun.status == ImportRunStatus.PROCESSING)
            .values(status=ImportRunStatus.FAILED, error_message=message[:2000], last_activity_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        summary.status = ImportRunStatus.FAILED.value
