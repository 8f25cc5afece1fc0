"""
Recognized raw CSV columns per source type.

Staged rows keep every column in ``raw_data``; this module only documents the
superset of keys the pipeline knows how to read, so source exports can add or
drop columns without schema changes. Header matching is case-insensitive and
ignores surrounding whitespace.

Source types:

``ghl``
    CRM contact export (``Contact Id``, ``First Name``, ``Last Name``,
    ``Email``, ``Phone``, ``Tags``).
``stripe_payments``
    Stripe payments export (``id``, ``amount``, ``currency``, ``status``,
    ``customer``, ``customer_email``, ``created``, ``payment_intent``).
``stripe_customers``
    Stripe customers export (``id``/``customer_id``, ``email``, ``name``,
    ``phone``).
``paypal``
    PayPal activity download, English or Spanish headers (``Transaction ID``,
    ``Name``/``Nombre``, ``From Email Address``/``Correo electrónico``,
    ``Gross``/``Bruto``, ``Currency``/``Divisa``, ``Status``/``Estado``,
    ``Date``/``Fecha``, ``Type``/``Tipo``).
``subscriptions``
    Subscription platform export (``subscription_id``, ``plan``,
    ``email``, ``phone``).
``master``
    Consolidated export with source prefixes: ``cnt_`` (CRM), ``pp_``
    (PayPal), ``st_`` (Stripe), ``sub_`` (subscriptions), ``usr_`` (users)
    and ``auto_`` (pre-merged columns).
``auto``
    Anything else; only the generic keys are read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

SOURCE_TYPES: tuple[str, ...] = (
    "ghl",
    "stripe_payments",
    "stripe_customers",
    "paypal",
    "subscriptions",
    "master",
    "auto",
)

MASTER_PREFIXES: tuple[str, ...] = ("cnt_", "pp_", "st_", "sub_", "usr_")

# Transaction-bearing exports and the sync source whose natural keys they share.
TRANSACTION_SOURCES: Mapping[str, str] = {
    "paypal": "paypal",
    "stripe_payments": "stripe",
}


@dataclass(frozen=True)
class SourceFields:
    """Candidate column names, in priority order, for one source type."""

    email: Sequence[str] = ()
    phone: Sequence[str] = ()
    full_name: Sequence[str] = ()
    first_name: Sequence[str] = ()
    last_name: Sequence[str] = ()
    tags: Sequence[str] = ()
    external_ids: Mapping[str, Sequence[str]] = field(default_factory=dict)
    transaction_id: Sequence[str] = ()
    amount: Sequence[str] = ()
    currency: Sequence[str] = ()
    status: Sequence[str] = ()
    occurred_at: Sequence[str] = ()
    transaction_type: Sequence[str] = ()


_GENERIC = SourceFields(
    email=("email", "e-mail", "email address", "customer_email"),
    phone=("phone", "phone number", "mobile", "telefono", "teléfono"),
    full_name=("full_name", "full name", "name", "nombre"),
    first_name=("first name", "first_name", "firstname"),
    last_name=("last name", "last_name", "lastname"),
    tags=("tags", "tag"),
)

SOURCE_FIELDS: Mapping[str, SourceFields] = {
    "ghl": SourceFields(
        email=("email",),
        phone=("phone",),
        full_name=("full name", "name"),
        first_name=("first name", "firstname"),
        last_name=("last name", "lastname"),
        tags=("tags", "tag"),
        external_ids={"ghl": ("contact id", "ghl_contact_id")},
    ),
    "stripe_payments": SourceFields(
        email=("customer_email", "email", "customer email"),
        phone=("customer_phone", "phone"),
        full_name=("customer_name", "name"),
        external_ids={"stripe": ("customer", "customer_id")},
        transaction_id=("id",),
        amount=("amount",),
        currency=("currency",),
        status=("status",),
        occurred_at=("created", "created_at", "created (utc)"),
    ),
    "stripe_customers": SourceFields(
        email=("email",),
        phone=("phone",),
        full_name=("name", "full_name"),
        external_ids={"stripe": ("customer_id", "stripe_customer_id", "id", "customer")},
    ),
    "paypal": SourceFields(
        email=("from email address", "correo electrónico", "correo electronico", "email"),
        phone=("contact phone number", "número de teléfono de contacto", "phone"),
        full_name=("name", "nombre"),
        external_ids={"paypal": ("payer id", "id del pagador", "pp_payer_id")},
        transaction_id=("transaction id", "id de transacción", "id de transaccion"),
        amount=("gross", "bruto", "amount"),
        currency=("currency", "divisa"),
        status=("status", "estado"),
        occurred_at=("date", "fecha"),
        transaction_type=("type", "tipo"),
    ),
    "subscriptions": SourceFields(
        email=("email", "customer_email"),
        phone=("phone", "telefono", "teléfono"),
        full_name=("name", "nombre", "full_name"),
        external_ids={"manychat": ("subscriber_id",)},
    ),
    "master": SourceFields(
        email=("email", "auto_master_email", "cnt_email", "usr_email", "pp_correo electrónico"),
        phone=("auto_master_phone", "cnt_phone", "usr_telefono", "usr_teléfono", "phone"),
        full_name=("auto_master_name", "cnt_full name", "usr_nombre", "pp_nombre"),
        first_name=("cnt_first name",),
        last_name=("cnt_last name",),
        tags=("cnt_tags", "tags"),
        external_ids={
            "ghl": ("cnt_contact id",),
            "stripe": ("st_customer id", "st_customer"),
            "paypal": ("pp_payer_id", "pp_id del pagador"),
            "manychat": ("sub_subscriber_id",),
        },
    ),
    "auto": _GENERIC,
}


def normalize_header(header: str) -> str:
    return header.replace("\ufeff", "").strip().lower()


def get_source_fields(source_type: str | None) -> SourceFields:
    return SOURCE_FIELDS.get((source_type or "auto").lower(), _GENERIC)


def detect_source_type(headers: Sequence[str]) -> str:
    """
    Guess the export type from its header row.

    A header set carrying two or more source prefixes (or any ``auto_``
    column) is a consolidated master export.
    """
    normalized = [normalize_header(h) for h in headers]
    prefixes_present = [prefix for prefix in MASTER_PREFIXES if any(h.startswith(prefix) for h in normalized)]
    if len(prefixes_present) >= 2 or any(h.startswith("auto_") for h in normalized):
        return "master"

    if any("contact id" in h or h == "ghl_contact_id" for h in normalized):
        return "ghl"

    if "id" in normalized and "amount" in normalized and (
        "payment_intent" in normalized or "customer" in normalized or "status" in normalized
    ):
        return "stripe_payments"

    if (
        any("customer_id" in h or h == "customer" for h in normalized)
        and "email" in normalized
        and "amount" not in normalized
    ):
        return "stripe_customers"

    if any(h == "nombre" or h == "transaction id" or "correo electrónico" in h for h in normalized):
        return "paypal"

    if any("subscription" in h for h in normalized) and any("plan" in h for h in normalized):
        return "subscriptions"

    return "auto"
