"""
Models backing payment-API synchronisation: sync runs (the checkpoint store),
persisted transactions, and operator-controlled system settings.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import Enum, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db, utc_now


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class SyncRunStatus(str, enum.Enum):
    """Lifecycle states for a sync run."""

    RUNNING = "running"
    CONTINUING = "continuing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_SYNC_STATUSES: tuple[SyncRunStatus, ...] = (SyncRunStatus.RUNNING, SyncRunStatus.CONTINUING)
TERMINAL_SYNC_STATUSES: tuple[SyncRunStatus, ...] = (
    SyncRunStatus.COMPLETED,
    SyncRunStatus.FAILED,
    SyncRunStatus.CANCELLED,
)

_ACTIVE_PREDICATE = "status IN ('running', 'continuing')"


class TransactionStatus(str, enum.Enum):
    """Canonical payment status shared by every source."""

    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"
    REFUNDED = "refunded"


class SyncRun(BaseModel):
    """Durable progress record for one synchronisation of a source."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum", values_callable=enum_values),
        nullable=False,
        default=SyncRunStatus.RUNNING,
        index=True,
    )
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    last_activity_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )
    total_fetched: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_inserted: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    checkpoint_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    cursor_chunk_index: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    cursor_page: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    __table_args__ = (
        Index("idx_sync_runs_source_status", "source", "status"),
        Index(
            "uq_sync_runs_active_source",
            "source",
            unique=True,
            sqlite_where=text(_ACTIVE_PREDICATE),
            postgresql_where=text(_ACTIVE_PREDICATE),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SYNC_STATUSES

    def __repr__(self) -> str:
        return f"<SyncRun id={self.id} source={self.source!r} status={self.status}>"


class Transaction(BaseModel):
    """A normalised payment keyed by its natural key ``(source, external_id)``."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    customer_email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    amount_minor_units: Mapped[int] = mapped_column(db.BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(db.String(3), nullable=False, default="USD")
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, name="transaction_status_enum", values_callable=enum_values),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True,
    )
    occurred_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_transactions_source_external_id"),
        Index("idx_transactions_email_status", "customer_email", "status"),
    )

    def __repr__(self) -> str:
        return f"<Transaction {self.source}:{self.external_id} {self.amount_minor_units} {self.currency}>"


class SystemSetting(db.Model):
    """Key/value configuration rows editable by operators at runtime."""

    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(db.String(100), primary_key=True)
    value_json: Mapped[Any] = mapped_column(db.JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        return f"<SystemSetting {self.key}={self.value_json!r}>"
