"""
Canonical customer upserts shared by the sync and merge pipelines.

Identity is the lowercased email, falling back to the normalised phone when a
customer has no email. Field precedence is "first non-null wins", with the
stored canonical value counted first. ``total_spend_minor`` is always
recomputed as the sum of the customer's ``paid`` transactions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from paysync.models import Customer, LifecycleStage, Transaction, TransactionStatus, db, utc_now

from .normalize import NormalizedRecord


@dataclass
class CustomerFields:
    """Merged attributes for one identity, ready to upsert."""

    email: str | None = None
    phone: str | None = None
    full_name: str | None = None
    tags: list[str] = field(default_factory=list)
    external_ids: dict[str, str] = field(default_factory=dict)

    @property
    def has_identity(self) -> bool:
        return bool(self.email or self.phone)


@dataclass
class CustomerUpsertResult:
    customer: Customer
    created: bool
    conflicts: tuple[str, ...] = ()


def union_tags(*tag_lists: Iterable[str] | None) -> list[str]:
    """Ordered union, compared case-insensitively after trimming."""
    seen: set[str] = set()
    merged: list[str] = []
    for tags in tag_lists:
        for tag in tags or ():
            cleaned = str(tag).strip()
            if not cleaned or cleaned.lower() in seen:
                continue
            seen.add(cleaned.lower())
            merged.append(cleaned)
    return merged


def find_customer(session: Session, *, email: str | None, phone: str | None) -> Customer | None:
    if email:
        return session.scalars(select(Customer).where(Customer.email == email)).first()
    if phone:
        return session.scalars(
            select(Customer).where(Customer.phone_e164 == phone, Customer.email.is_(None)).order_by(Customer.id)
        ).first()
    return None


def upsert_customer(fields: CustomerFields, *, session: Session | None = None) -> CustomerUpsertResult:
    """
    Create or update the canonical customer for ``fields``.

    Existing non-null values win; a differing incoming name or phone is
    reported in ``conflicts`` and otherwise ignored. Tags are unioned.
    """
    if not fields.has_identity:
        raise ValueError("Customer upsert requires an email or phone.")
    session = session or db.session

    customer = find_customer(session, email=fields.email, phone=fields.phone)
    created = customer is None
    conflicts: list[str] = []
    if customer is None:
        customer = Customer(
            email=fields.email,
            phone_e164=fields.phone,
            full_name=fields.full_name,
            tags=union_tags(fields.tags),
            external_ids=dict(fields.external_ids),
            total_spend_minor=0,
            lifecycle_stage=LifecycleStage.LEAD,
        )
        session.add(customer)
    else:
        if customer.full_name and fields.full_name and customer.full_name != fields.full_name:
            conflicts.append("full_name")
        if customer.phone_e164 and fields.phone and customer.phone_e164 != fields.phone:
            conflicts.append("phone")
        customer.full_name = customer.full_name or fields.full_name
        customer.phone_e164 = customer.phone_e164 or fields.phone
        customer.tags = union_tags(customer.tags, fields.tags)
        merged_ids = dict(fields.external_ids)
        merged_ids.update({key: value for key, value in (customer.external_ids or {}).items() if value})
        customer.external_ids = merged_ids

    customer.last_sync_at = utc_now()
    session.flush()
    return CustomerUpsertResult(customer=customer, created=created, conflicts=tuple(conflicts))


def recalculate_total_spend(emails: Iterable[str], *, session: Session | None = None) -> int:
    """
    Set ``total_spend_minor`` to the sum of paid transactions for each email
    and promote customers with spend to ``CUSTOMER``. Returns rows updated.
    """
    session = session or db.session
    email_list = sorted({email for email in emails if email})
    if not email_list:
        return 0

    totals: Mapping[str, int] = dict(
        session.execute(
            select(Transaction.customer_email, func.coalesce(func.sum(Transaction.amount_minor_units), 0))
            .where(
                Transaction.customer_email.in_(email_list),
                Transaction.status == TransactionStatus.PAID,
            )
            .group_by(Transaction.customer_email)
        ).all()
    )
    updated = 0
    for customer in session.scalars(select(Customer).where(Customer.email.in_(email_list))):
        customer.total_spend_minor = int(totals.get(customer.email, 0))
        if customer.total_spend_minor > 0:
            customer.lifecycle_stage = LifecycleStage.CUSTOMER
        updated += 1
    session.flush()
    return updated


def customer_fields_from_records(records: Sequence[NormalizedRecord]) -> list[CustomerFields]:
    """Collapse synced transactions into one ``CustomerFields`` per email."""
    by_email: dict[str, CustomerFields] = {}
    for record in records:
        if not record.customer_email:
            continue
        entry = by_email.setdefault(record.customer_email, CustomerFields(email=record.customer_email))
        name = record.raw_metadata.get("customer_name")
        if name and not entry.full_name:
            entry.full_name = str(name)
        payer_id = record.raw_metadata.get("payer_id")
        if payer_id and record.source not in entry.external_ids:
            entry.external_ids[record.source] = str(payer_id)
    return list(by_email.values())


def sync_customers_from_records(records: Sequence[NormalizedRecord], *, session: Session | None = None) -> int:
    """Upsert customers seen in a page of transactions and refresh their spend."""
    session = session or db.session
    fields_list = customer_fields_from_records(records)
    for fields in fields_list:
        upsert_customer(fields, session=session)
    recalculate_total_spend((fields.email for fields in fields_list), session=session)
    return len(fields_list)
