"""
Canonical customer entity assembled from sync records and merged CSV rows.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db
from .sync import enum_values


class LifecycleStage(str, enum.Enum):
    LEAD = "lead"
    CUSTOMER = "customer"


class Customer(BaseModel):
    """
    Canonical customer keyed by lowercased email, or by normalised phone when no
    email is known.
    """

    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, unique=True)
    phone_e164: Mapped[str | None] = mapped_column(db.String(20), nullable=True, index=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    tags: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    external_ids: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    total_spend_minor: Mapped[int] = mapped_column(db.BigInteger, nullable=False, default=0)
    lifecycle_stage: Mapped[LifecycleStage] = mapped_column(
        Enum(LifecycleStage, name="customer_lifecycle_enum", values_callable=enum_values),
        nullable=False,
        default=LifecycleStage.LEAD,
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<Customer id={self.id} email={self.email!r} phone={self.phone_e164!r}>"
