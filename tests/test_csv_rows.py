import pytest

from paysync.ingest.adapters.csv_rows import CSVPayloadError, parse_csv_text


def test_parses_rows_keyed_by_header():
    parsed = parse_csv_text("Email,Name\nada@example.com,Ada\ngrace@example.com,Grace\n")

    assert parsed.header == ["Email", "Name"]
    assert parsed.rows == [
        {"Email": "ada@example.com", "Name": "Ada"},
        {"Email": "grace@example.com", "Name": "Grace"},
    ]
    assert parsed.total_data_rows == 2
    assert parsed.malformed == []


def test_byte_order_mark_is_stripped():
    parsed = parse_csv_text("\ufeffEmail,Name\nada@example.com,Ada\n")

    assert parsed.header == ["Email", "Name"]
    assert parsed.rows[0]["Email"] == "ada@example.com"


def test_blank_lines_are_not_data_rows():
    parsed = parse_csv_text("\nEmail,Name\n\nada@example.com,Ada\n,\n\n")

    assert parsed.total_data_rows == 1


def test_quoted_fields_keep_commas_and_newlines():
    parsed = parse_csv_text('Email,Note\nada@example.com,"likes, commas\nand lines"\n')

    assert parsed.rows == [{"Email": "ada@example.com", "Note": "likes, commas\nand lines"}]


def test_column_count_mismatch_is_reported_and_skipped():
    parsed = parse_csv_text("Email,Name\nada@example.com,Ada,extra\ngrace@example.com,Grace\nlonely\n")

    assert len(parsed.rows) == 1
    assert [row.line_number for row in parsed.malformed] == [2, 4]
    assert "Expected 2 columns, found 3" in parsed.malformed[0].reason
    assert parsed.total_data_rows == 3


@pytest.mark.parametrize("payload", ["", "   \n\n", None])
def test_empty_payload_is_rejected(payload):
    with pytest.raises(CSVPayloadError):
        parse_csv_text(payload)


def test_header_only_payload_has_no_rows():
    parsed = parse_csv_text("Email,Name\n")

    assert parsed.header == ["Email", "Name"]
    assert parsed.total_data_rows == 0
