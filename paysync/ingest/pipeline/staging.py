"""Helpers for staging raw CSV rows into ``staging_rows``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

from flask import current_app, has_app_context
from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from config.source_fields import SOURCE_TYPES, detect_source_type, get_source_fields, normalize_header
from paysync.ingest.adapters.csv_rows import CSVPayloadError, ParsedCSV, parse_csv_text
from paysync.ingest.metrics import record_staging_rows
from paysync.models import ImportRun, ImportRunStatus, StagingRow, StagingRowStatus, db, utc_now

from .normalize import first_value

logger = logging.getLogger(__name__)

BATCH_SIZE = 500
ERROR_SAMPLE_LIMIT = 50

ACCEPTING_STATUSES: tuple[ImportRunStatus, ...] = (ImportRunStatus.STAGING, ImportRunStatus.STAGED)


class ImportRunNotFoundError(LookupError):
    pass


class ImportRunStateError(RuntimeError):
    """The import exists but its status does not allow the requested operation."""

    def __init__(self, import_id: int, status: ImportRunStatus, message: str | None = None) -> None:
        super().__init__(message or f"Import {import_id} is {status.value}.")
        self.import_id = import_id
        self.status = status


def _commit_staging_batch() -> None:
    if has_app_context() and current_app.config.get("TESTING"):
        db.session.flush()
    else:
        db.session.commit()


@dataclass
class StagingSummary:
    """Outcome statistics for one staged chunk."""

    import_id: int
    source_type: str
    total_data_rows: int = 0
    rows_staged: int = 0
    malformed: int = 0
    missing_identity: int = 0
    batches: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def rows_skipped_parse(self) -> int:
        return self.malformed + self.missing_identity

    def add_error(self, message: str) -> None:
        if len(self.errors) < ERROR_SAMPLE_LIMIT:
            self.errors.append(message)


@dataclass(frozen=True)
class ExtractedIdentity:
    email: str | None
    phone: str | None
    full_name: str | None


def extract_identity(raw: Mapping[str, str], source_type: str) -> ExtractedIdentity:
    """Best-effort email, phone and name from a raw row; no validation."""
    fields = get_source_fields(source_type)
    lowered = {normalize_header(key): value for key, value in raw.items() if key}
    email = first_value(lowered, fields.email)
    phone = first_value(lowered, fields.phone)
    full_name = first_value(lowered, fields.full_name)
    if not full_name:
        parts = [first_value(lowered, fields.first_name), first_value(lowered, fields.last_name)]
        full_name = " ".join(part for part in parts if part) or None
    return ExtractedIdentity(
        email=email.lower() if email else None,
        phone=phone,
        full_name=full_name,
    )


def resolve_source_type(requested: str | None, header: list[str]) -> str:
    if requested and requested.lower() != "auto":
        source_type = requested.lower()
        if source_type not in SOURCE_TYPES:
            raise CSVPayloadError(f"Unknown csvType '{requested}'. Expected one of: {', '.join(SOURCE_TYPES)}.")
        return source_type
    return detect_source_type(header)


def create_import_run(filename: str | None, source_type: str) -> ImportRun:
    run = ImportRun(
        filename=filename,
        source_type=source_type,
        status=ImportRunStatus.STAGING,
        total_rows=0,
        rows_staged=0,
        rows_invalid=0,
        started_at=utc_now(),
    )
    db.session.add(run)
    db.session.commit()
    logger.info("Import run created", extra={"import_id": run.id, "import_source_type": source_type})
    return run


def _reserve_row_numbers(import_id: int, count: int) -> int:
    """
    Claim ``count`` row numbers for a chunk and return the offset.

    The increment doubles as the status check: an import that stopped accepting
    rows matches nothing.
    """
    reserved = db.session.execute(
        update(ImportRun)
        .where(ImportRun.id == import_id, ImportRun.status.in_(ACCEPTING_STATUSES))
        .values(status=ImportRunStatus.STAGING, total_rows=ImportRun.total_rows + count, last_activity_at=utc_now())
        .execution_options(synchronize_session=False)
    ).rowcount
    if not reserved:
        db.session.rollback()
        run = db.session.get(ImportRun, import_id, populate_existing=True)
        if run is None:
            raise ImportRunNotFoundError(f"Import {import_id} not found.")
        raise ImportRunStateError(import_id, run.status, f"Import {import_id} is {run.status.value}; not accepting rows.")
    new_total = db.session.scalar(select(ImportRun.total_rows).where(ImportRun.id == import_id))
    return int(new_total) - count


def stage_csv_chunk(
    import_run: ImportRun,
    parsed: ParsedCSV,
    *,
    batch_size: int = BATCH_SIZE,
) -> StagingSummary:
    """
    Insert the rows of one parsed chunk as ``pending`` staging rows.

    Rows without an email or phone are skipped at parse, as are malformed
    lines, so ``rows_staged + rows_skipped_parse == total_data_rows``.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1.")
    import_id = import_run.id
    source_type = import_run.source_type
    summary = StagingSummary(import_id=import_id, source_type=source_type, total_data_rows=parsed.total_data_rows)
    offset = _reserve_row_numbers(import_id, parsed.total_data_rows)

    for malformed in parsed.malformed:
        summary.malformed += 1
        summary.add_error(f"Line {malformed.line_number}: {malformed.reason}")

    pending: list[dict] = []
    now = utc_now()
    try:
        for position, raw in enumerate(parsed.rows, start=1):
            identity = extract_identity(raw, source_type)
            row_number = offset + position
            if not identity.email and not identity.phone:
                summary.missing_identity += 1
                summary.add_error(f"Row {row_number}: no email or phone.")
                continue
            pending.append(
                {
                    "import_id": import_id,
                    "row_number": row_number,
                    "email": identity.email,
                    "phone": identity.phone,
                    "full_name": identity.full_name,
                    "source_type": source_type,
                    "raw_data": dict(raw),
                    "processing_status": StagingRowStatus.PENDING,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            if len(pending) >= batch_size:
                _insert_batch(pending, summary)

        if pending:
            _insert_batch(pending, summary)
    except SQLAlchemyError as exc:
        _abort_chunk(import_id, parsed, summary, exc)
        raise

    db.session.execute(
        update(ImportRun)
        .where(ImportRun.id == import_id)
        .values(
            rows_staged=ImportRun.rows_staged + summary.rows_staged,
            rows_invalid=ImportRun.rows_invalid + summary.rows_skipped_parse,
        )
        .execution_options(synchronize_session=False)
    )
    _commit_staging_batch()
    record_staging_rows(staged=summary.rows_staged, skipped=summary.rows_skipped_parse)
    logger.info(
        "CSV chunk staged",
        extra={
            "import_id": import_id,
            "import_total_data_rows": summary.total_data_rows,
            "import_rows_staged": summary.rows_staged,
            "import_rows_skipped_parse": summary.rows_skipped_parse,
            "import_batches": summary.batches,
        },
    )
    return summary


def _insert_batch(pending: list[dict], summary: StagingSummary) -> None:
    with db.session.begin_nested():
        db.session.execute(insert(StagingRow), pending)
    _commit_staging_batch()
    summary.rows_staged += len(pending)
    summary.batches += 1
    pending.clear()


def _abort_chunk(import_id: int, parsed: ParsedCSV, summary: StagingSummary, exc: Exception) -> None:
    """
    Record the batches that made it in and stop the import.

    Rows of the failed batch and after it are released from ``total_rows``,
    so ``rows_staged + rows_invalid == total_rows`` still holds. The import
    moves to ``failed``: it accepts no more chunks, and its staged rows can
    still be merged.
    """
    unaccounted = parsed.total_data_rows - summary.rows_staged - summary.rows_skipped_parse
    message = f"Staging stopped after {summary.rows_staged} rows: {exc.__class__.__name__}: {exc}"
    db.session.execute(
        update(ImportRun)
        .where(ImportRun.id == import_id)
        .values(
            status=ImportRunStatus.FAILED,
            total_rows=ImportRun.total_rows - unaccounted,
            rows_staged=ImportRun.rows_staged + summary.rows_staged,
            rows_invalid=ImportRun.rows_invalid + summary.rows_skipped_parse,
            error_message=message[:2000],
            last_activity_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    record_staging_rows(staged=summary.rows_staged, skipped=summary.rows_skipped_parse)
    logger.error(
        "CSV chunk staging failed",
        extra={
            "import_id": import_id,
            "import_rows_staged": summary.rows_staged,
            "import_rows_released": unaccounted,
        },
        exc_info=True,
    )


def stage_csv_upload(
    csv_text: str,
    *,
    source_type: str | None = None,
    filename: str | None = None,
    import_id: int | None = None,
    batch_size: int | None = None,
) -> StagingSummary:
    """
    Stage one chunk of an upload, creating the import on the first chunk.

    Later chunks pass ``import_id`` and inherit the import's source type. The
    import is left ``staged`` so a merge can pick it up.
    """
    parsed = parse_csv_text(csv_text)
    if batch_size is None:
        batch_size = int(current_app.config.get("STAGING_BATCH_SIZE", BATCH_SIZE)) if has_app_context() else BATCH_SIZE

    if import_id is None:
        run = create_import_run(filename, resolve_source_type(source_type, parsed.header))
    else:
        run = db.session.get(ImportRun, import_id)
        if run is None:
            raise ImportRunNotFoundError(f"Import {import_id} not found.")
        if run.status not in ACCEPTING_STATUSES:
            raise ImportRunStateError(import_id, run.status, f"Import {import_id} is {run.status.value}; not accepting rows.")

    summary = stage_csv_chunk(run, parsed, batch_size=batch_size)
    db.session.execute(
        update(ImportRun)
        .where(ImportRun.id == summary.import_id, ImportRun.status == ImportRunStatus.STAGING)
        .values(status=ImportRunStatus.STAGED, staged_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return summary
