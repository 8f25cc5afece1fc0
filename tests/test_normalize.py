from datetime import datetime, timezone
from decimal import Decimal

import pytest

from config.source_fields import detect_source_type
from conftest import paypal_detail
from paysync.ingest.pipeline.normalize import (
    map_payment_status,
    normalize_csv_transaction,
    normalize_email,
    normalize_paypal_transaction,
    normalize_phone,
    parse_timestamp,
    to_minor_units,
)
from paysync.models import TransactionStatus


@pytest.mark.parametrize(
    "value, expected",
    [
        ("12.34", 1234),
        ("1,234.56", 123456),
        ("1.234,56", 123456),
        ("-12.5", 1250),
        ("$ 7", 700),
        ("0.005", 1),
        (Decimal("19.999"), 2000),
        ("", 0),
        (None, 0),
    ],
)
def test_to_minor_units(value, expected):
    assert to_minor_units(value) == expected


def test_unparseable_amount_is_zero():
    assert to_minor_units("abc") == 0


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("S", TransactionStatus.PAID),
        ("completed", TransactionStatus.PAID),
        ("Completado", TransactionStatus.PAID),
        ("D", TransactionStatus.FAILED),
        ("V", TransactionStatus.REFUNDED),
        ("Reembolsado", TransactionStatus.REFUNDED),
        ("P", TransactionStatus.PENDING),
        ("something-new", TransactionStatus.PENDING),
        (None, TransactionStatus.PENDING),
    ],
)
def test_map_payment_status(raw, expected):
    assert map_payment_status(raw) is expected


def test_normalize_email_and_phone():
    assert normalize_email("  Ada@Example.COM ") == "ada@example.com"
    assert normalize_email("not-an-email") is None
    assert normalize_email("") is None
    assert normalize_phone("+1 (415) 555-0101") == "+14155550101"
    assert normalize_phone("415-555-0101") == "+4155550101"
    assert normalize_phone("12345") is None


def test_parse_timestamp_formats():
    expected = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    assert parse_timestamp("2024-03-01T12:00:00+0000") == expected
    assert parse_timestamp("2024-03-01T12:00:00Z") == expected
    assert parse_timestamp("2024-03-01 12:00:00") == expected
    assert parse_timestamp(str(int(expected.timestamp()))) == expected
    assert parse_timestamp("01/03/2024") == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert parse_timestamp("garbage") is None
    assert parse_timestamp(None) is None


def test_normalize_paypal_transaction_maps_fields():
    detail = paypal_detail("TX-1", email="Buyer@Example.com", amount="1,250.75", currency="eur", status="S")

    record = normalize_paypal_transaction(detail)

    assert record is not None
    assert record.natural_key == ("paypal", "TX-1")
    assert record.customer_email == "buyer@example.com"
    assert record.amount_minor_units == 125075
    assert record.currency == "EUR"
    assert record.canonical_status is TransactionStatus.PAID
    assert record.occurred_at == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert record.raw_metadata["customer_name"] == "Ada Buyer"
    assert record.raw_metadata["product_names"] == ["Course"]
    assert record.raw_metadata["raw_status"] == "S"


def test_paypal_record_without_email_is_unusable():
    assert normalize_paypal_transaction(paypal_detail("TX-2", email=None)) is None


def test_paypal_record_without_transaction_id_is_unusable():
    detail = paypal_detail("TX-3")
    detail["transaction_info"].pop("transaction_id")

    assert normalize_paypal_transaction(detail) is None


def test_csv_paypal_export_uses_same_natural_key_as_api():
    raw = {
        "Transaction ID": "TX-1",
        "Name": "Ada Buyer",
        "From Email Address": "ADA@example.com",
        "Gross": "25,00",
        "Currency": "USD",
        "Status": "Completed",
        "Date": "01/03/2024",
        "Type": "Website Payment",
    }

    record = normalize_csv_transaction(raw, "paypal")

    assert record is not None
    assert record.natural_key == ("paypal", "TX-1")
    assert record.customer_email == "ada@example.com"
    assert record.amount_minor_units == 2500
    assert record.canonical_status is TransactionStatus.PAID


def test_csv_withdrawals_are_not_transactions():
    raw = {"Transaction ID": "TX-9", "Gross": "-100.00", "Type": "General Withdrawal"}

    assert normalize_csv_transaction(raw, "paypal") is None


def test_csv_stripe_payment_defaults_to_succeeded():
    raw = {"id": "ch_1", "amount": "19.99", "currency": "usd", "customer_email": "x@example.com"}

    record = normalize_csv_transaction(raw, "stripe_payments")

    assert record is not None
    assert record.natural_key == ("stripe", "ch_1")
    assert record.canonical_status is TransactionStatus.PAID


def test_csv_contacts_export_has_no_transaction():
    assert normalize_csv_transaction({"Email": "a@example.com"}, "ghl") is None


@pytest.mark.parametrize(
    "headers, expected",
    [
        (["Contact Id", "First Name", "Email"], "ghl"),
        (["id", "amount", "currency", "status", "customer_email"], "stripe_payments"),
        (["customer_id", "email", "name"], "stripe_customers"),
        (["Fecha", "Nombre", "Correo electrónico", "Bruto"], "paypal"),
        (["subscription_id", "plan", "email"], "subscriptions"),
        (["cnt_email", "pp_nombre"], "master"),
        (["email", "phone"], "auto"),
    ],
)
def test_detect_source_type(headers, expected):
    assert detect_source_type(headers) == expected
