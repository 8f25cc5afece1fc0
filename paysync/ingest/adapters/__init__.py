"""Source adapters: CSV text parsing and the PayPal reporting client."""

from __future__ import annotations

from .csv_rows import CSVPayloadError, MalformedRow, ParsedCSV, parse_csv_text

__all__ = [
    "CSVPayloadError",
    "MalformedRow",
    "ParsedCSV",
    "parse_csv_text",
]
