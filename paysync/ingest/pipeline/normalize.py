"""
Natural-key normalisation for payment records.

Every source-specific record is mapped to a ``NormalizedRecord`` whose
``natural_key`` (``(source, external_id)``) is the conflict target used by the
batch upsert writer. Amounts are converted to integer minor units through
``Decimal`` so no floating point value ever reaches the store.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping

from config.source_fields import TRANSACTION_SOURCES, get_source_fields, normalize_header
from paysync.models import TransactionStatus

logger = logging.getLogger(__name__)

_AMOUNT_CLEANUP = re.compile(r"[^0-9,.\-]")
_PHONE_CLEANUP = re.compile(r"[^\d+]")

_STATUS_MAP: Mapping[str, TransactionStatus] = {
    "s": TransactionStatus.PAID,
    "success": TransactionStatus.PAID,
    "succeeded": TransactionStatus.PAID,
    "completed": TransactionStatus.PAID,
    "completado": TransactionStatus.PAID,
    "paid": TransactionStatus.PAID,
    "d": TransactionStatus.FAILED,
    "denied": TransactionStatus.FAILED,
    "denegado": TransactionStatus.FAILED,
    "failed": TransactionStatus.FAILED,
    "fallido": TransactionStatus.FAILED,
    "canceled": TransactionStatus.FAILED,
    "cancelled": TransactionStatus.FAILED,
    "v": TransactionStatus.REFUNDED,
    "r": TransactionStatus.REFUNDED,
    "reversed": TransactionStatus.REFUNDED,
    "refunded": TransactionStatus.REFUNDED,
    "reembolsado": TransactionStatus.REFUNDED,
    "p": TransactionStatus.PENDING,
    "pending": TransactionStatus.PENDING,
    "pendiente": TransactionStatus.PENDING,
}

_TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
)

_NON_PAYMENT_TYPES = ("withdrawal", "retiro")


@dataclass(frozen=True)
class NormalizedRecord:
    """Canonical transaction shape shared by API and CSV ingestion."""

    source: str
    external_id: str
    customer_email: str | None
    amount_minor_units: int
    currency: str
    canonical_status: TransactionStatus
    occurred_at: datetime | None
    raw_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def natural_key(self) -> tuple[str, str]:
        return (self.source, self.external_id)

    def as_row(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "external_id": self.external_id,
            "customer_email": self.customer_email,
            "amount_minor_units": self.amount_minor_units,
            "currency": self.currency,
            "status": self.canonical_status,
            "occurred_at": self.occurred_at,
            "metadata_json": self.raw_metadata,
        }


def normalize_email(value: object | None) -> str | None:
    """Lower-case and trim an email; values without ``@`` are rejected."""
    if value is None:
        return None
    token = str(value).strip().lower()
    if not token or "@" not in token:
        return None
    return token


def normalize_phone(value: object | None) -> str | None:
    """
    Keep digits (and a leading ``+``); at least ten digits are required.
    The result always carries a ``+`` prefix.
    """
    if value is None:
        return None
    cleaned = _PHONE_CLEANUP.sub("", str(value).strip())
    digits = cleaned.lstrip("+")
    if len(digits) < 10 or not digits.isdigit():
        return None
    return f"+{digits}"


def to_minor_units(value: object | None) -> int:
    """
    Convert a decimal amount (``"1,234.56"``, ``"-12.5"``, ``Decimal``) into
    absolute integer minor units, rounding half up.
    """
    if value in (None, ""):
        return 0
    if isinstance(value, Decimal):
        amount = value
    else:
        text = _AMOUNT_CLEANUP.sub("", str(value))
        if "," in text and "." in text:
            # Whichever separator comes last is the decimal point.
            if text.rfind(",") > text.rfind("."):
                text = text.replace(".", "").replace(",", ".")
            else:
                text = text.replace(",", "")
        elif "," in text:
            head, _, tail = text.rpartition(",")
            text = f"{head.replace(',', '')}.{tail}" if len(tail) <= 2 else text.replace(",", "")
        try:
            amount = Decimal(text)
        except InvalidOperation:
            logger.warning("Unparseable amount %r treated as zero", value)
            return 0
    return int((abs(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def map_payment_status(raw: object | None) -> TransactionStatus:
    if raw is None:
        return TransactionStatus.PENDING
    return _STATUS_MAP.get(str(raw).strip().lower(), TransactionStatus.PENDING)


def parse_timestamp(value: object | None) -> datetime | None:
    """Parse API and export timestamps into aware UTC datetimes."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
        for fmt in _TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_paypal_transaction(detail: Mapping[str, Any]) -> NormalizedRecord | None:
    """
    Map one ``transaction_details`` entry from the PayPal reporting API.

    Returns ``None`` for entries missing a transaction id or payer email.
    """
    info = detail.get("transaction_info") or {}
    payer = detail.get("payer_info") or {}
    cart = detail.get("cart_info") or {}

    transaction_id = info.get("transaction_id")
    email = normalize_email(payer.get("email_address"))
    if not transaction_id or not email:
        return None

    amount = info.get("transaction_amount") or {}
    fee = info.get("fee_amount") or {}
    payer_name = payer.get("payer_name") or {}
    item_names = [item.get("item_name") for item in cart.get("item_details") or () if item.get("item_name")]

    metadata = {
        "customer_name": payer_name.get("alternate_full_name") or _join_name(payer_name),
        "payer_id": payer.get("account_id"),
        "event_code": info.get("transaction_event_code"),
        "transaction_subject": info.get("transaction_subject"),
        "transaction_note": info.get("transaction_note"),
        "raw_status": info.get("transaction_status"),
        "fee_minor_units": to_minor_units(fee.get("value")) if fee.get("value") else None,
        "product_names": item_names,
    }

    return NormalizedRecord(
        source="paypal",
        external_id=str(transaction_id),
        customer_email=email,
        amount_minor_units=to_minor_units(amount.get("value")),
        currency=str(amount.get("currency_code") or "USD").upper(),
        canonical_status=map_payment_status(info.get("transaction_status")),
        occurred_at=parse_timestamp(info.get("transaction_initiation_date")),
        raw_metadata={key: value for key, value in metadata.items() if value not in (None, "", [])},
    )


def normalize_csv_transaction(raw_data: Mapping[str, Any], source_type: str) -> NormalizedRecord | None:
    """
    Map a staged row from a transaction-bearing export to a ``NormalizedRecord``.

    PayPal exports use the same transaction ids as the reporting API, so both
    paths converge on one natural key.
    """
    source = TRANSACTION_SOURCES.get(source_type)
    if source is None:
        return None
    fields = get_source_fields(source_type)
    lowered = {normalize_header(key): value for key, value in raw_data.items()}

    external_id = first_value(lowered, fields.transaction_id)
    if not external_id:
        return None
    transaction_type = (first_value(lowered, fields.transaction_type) or "").lower()
    if any(marker in transaction_type for marker in _NON_PAYMENT_TYPES):
        return None

    default_status = "completed" if source == "paypal" else "succeeded"
    return NormalizedRecord(
        source=source,
        external_id=str(external_id),
        customer_email=normalize_email(first_value(lowered, fields.email)),
        amount_minor_units=to_minor_units(first_value(lowered, fields.amount)),
        currency=str(first_value(lowered, fields.currency) or "USD").upper(),
        canonical_status=map_payment_status(first_value(lowered, fields.status) or default_status),
        occurred_at=parse_timestamp(first_value(lowered, fields.occurred_at)),
        raw_metadata={"import_source_type": source_type, "transaction_type": transaction_type or None},
    )


def first_value(lowered: Mapping[str, Any], candidates) -> str | None:
    """Return the first non-blank value among ``candidates`` (lower-cased keys)."""
    for candidate in candidates:
        value = lowered.get(candidate)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _join_name(payer_name: Mapping[str, Any]) -> str | None:
    parts = [payer_name.get("given_name"), payer_name.get("surname")]
    joined = " ".join(part for part in parts if part)
    return joined or None
