"""
CSV text parsing for bulk imports.

Uploads arrive as text, possibly one chunk of a larger file. Parsing keeps
going past bad lines: rows whose column count differs from the header, or
that the csv module cannot tokenise, are reported as malformed and skipped.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field


class CSVPayloadError(ValueError):
    """Raised when the upload has no usable header row."""


@dataclass(frozen=True)
class MalformedRow:
    line_number: int
    reason: str


@dataclass
class ParsedCSV:
    header: list[str]
    rows: list[dict[str, str]] = field(default_factory=list)
    malformed: list[MalformedRow] = field(default_factory=list)

    @property
    def total_data_rows(self) -> int:
        return len(self.rows) + len(self.malformed)


def _is_blank(values: list[str]) -> bool:
    return all(not (value or "").strip() for value in values)


def parse_csv_text(text: str) -> ParsedCSV:
    """
    Parse ``text`` into header-keyed rows.

    A leading byte-order mark is stripped and blank lines are ignored; they do
    not count as data rows.
    """
    if text is None or not text.strip():
        raise CSVPayloadError("CSV payload is empty.")
    text = text.lstrip("\ufeff")

    reader = csv.reader(io.StringIO(text, newline=""))
    header: list[str] | None = None
    parsed: ParsedCSV | None = None
    while True:
        try:
            values = next(reader)
        except StopIteration:
            break
        except csv.Error as exc:
            if parsed is None:
                raise CSVPayloadError(f"CSV header could not be parsed: {exc}") from exc
            parsed.malformed.append(MalformedRow(line_number=reader.line_num, reason=str(exc)))
            continue

        if _is_blank(values):
            continue
        if header is None:
            header = [value.replace("\ufeff", "").strip() for value in values]
            parsed = ParsedCSV(header=header)
            continue
        if len(values) != len(header):
            parsed.malformed.append(
                MalformedRow(
                    line_number=reader.line_num,
                    reason=f"Expected {len(header)} columns, found {len(values)}.",
                )
            )
            continue
        parsed.rows.append(dict(zip(header, values)))

    if parsed is None or not any(header or ()):
        raise CSVPayloadError("CSV payload has no header row.")
    return parsed
