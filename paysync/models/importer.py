"""
SQLAlchemy models for the two-phase CSV import pipeline.

An ``ImportRun`` is created for the first chunk of an upload; every chunk of
the same file appends ``StagingRow`` records to it. Staged rows are never
deleted and remain as the audit trail of what the merge worker consumed.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db, utc_now
from .sync import enum_values


class ImportRunStatus(str, enum.Enum):
    """Lifecycle states for a bulk import."""

    STAGING = "staging"
    STAGED = "staged"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StagingRowStatus(str, enum.Enum):
    """Processing state of a single staged CSV row."""

    PENDING = "pending"
    MERGED = "merged"
    SKIPPED = "skipped"
    ERROR = "error"


TERMINAL_ROW_STATUSES: tuple[StagingRowStatus, ...] = (
    StagingRowStatus.MERGED,
    StagingRowStatus.SKIPPED,
    StagingRowStatus.ERROR,
)


class ImportRun(BaseModel):
    """Metadata and counters describing one logical CSV upload."""

    __tablename__ = "import_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    filename: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    source_type: Mapped[str] = mapped_column(db.String(50), nullable=False, default="auto")
    status: Mapped[ImportRunStatus] = mapped_column(
        Enum(ImportRunStatus, name="import_run_status_enum", values_callable=enum_values),
        nullable=False,
        default=ImportRunStatus.STAGING,
        index=True,
    )
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_staged: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_invalid: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_merged: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_conflict: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_error: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    staged_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    last_activity_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    rows: Mapped[list["StagingRow"]] = relationship(
        "StagingRow",
        back_populates="import_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_import_runs_source_type_status", "source_type", "status"),)

    def __repr__(self) -> str:
        return f"<ImportRun id={self.id} source_type={self.source_type!r} status={self.status}>"


class StagingRow(BaseModel):
    """One raw CSV row held for the merge worker."""

    __tablename__ = "staging_rows"

    id: Mapped[int] = mapped_column(primary_key=True)
    import_id: Mapped[int] = mapped_column(
        ForeignKey("import_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    row_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    source_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    raw_data: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    processing_status: Mapped[StagingRowStatus] = mapped_column(
        Enum(StagingRowStatus, name="staging_row_status_enum", values_callable=enum_values),
        nullable=False,
        default=StagingRowStatus.PENDING,
    )
    merged_customer_id: Mapped[int | None] = mapped_column(
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    import_run: Mapped[ImportRun] = relationship("ImportRun", back_populates="rows")

    __table_args__ = (
        UniqueConstraint("import_id", "row_number", name="uq_staging_rows_import_row"),
        Index("idx_staging_rows_import_status", "import_id", "processing_status"),
    )

    def __repr__(self) -> str:
        return f"<StagingRow import={self.import_id} row={self.row_number} status={self.processing_status}>"
