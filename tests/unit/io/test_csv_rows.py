# tests/unit/io/test_csv_rows.py
"""Tests for input and output CSV handling."""

from __future__ import annotations

import io

import pytest

from enricher.contracts.results import OUTPUT_COLUMNS, OutputRow
from enricher.io.csv_rows import CSVFormatError, read_emails_csv, read_rows_csv, rows_to_csv_bytes, write_rows_csv


class TestReadEmails:
    def test_reads_email_column_in_order(self) -> None:
        data = b"name,email\nJane,jane@x.com\nBob, bob@x.com \n"
        assert read_emails_csv(data) == ["jane@x.com", " bob@x.com "]

    def test_header_match_is_case_insensitive_and_trimmed(self) -> None:
        assert read_emails_csv("id, Email \n1,a@x.com\n") == ["a@x.com"]

    def test_first_email_column_wins(self) -> None:
        assert read_emails_csv("email,EMAIL\nfirst@x.com,second@x.com\n") == ["first@x.com"]

    def test_utf8_bom_is_ignored(self) -> None:
        assert read_emails_csv("\ufeffemail\na@x.com\n".encode()) == ["a@x.com"]

    def test_blank_lines_skipped_blank_values_kept(self) -> None:
        assert read_emails_csv("email,n\n\na@x.com,1\n,2\n") == ["a@x.com", ""]

    def test_accepts_text_stream(self) -> None:
        assert read_emails_csv(io.StringIO("email\na@x.com\n")) == ["a@x.com"]

    def test_empty_input(self) -> None:
        with pytest.raises(CSVFormatError, match="input is empty"):
            read_emails_csv(b"")

    def test_missing_email_column(self) -> None:
        with pytest.raises(CSVFormatError, match="missing required column 'email'"):
            read_emails_csv("name\nJane\n")

    def test_short_row(self) -> None:
        with pytest.raises(CSVFormatError, match="row has 1 columns, want at least 2"):
            read_emails_csv("name,email\nJane\n")


class TestOutputCSV:
    def test_header_and_rows(self) -> None:
        rows = [OutputRow(email="a@x.com", company="Acme, Inc.", status="ok")]
        text = rows_to_csv_bytes(rows).decode()
        lines = text.split("\n")
        assert lines[0] == ",".join(OUTPUT_COLUMNS)
        assert '"Acme, Inc."' in lines[1]

    def test_header_only_for_no_rows(self) -> None:
        buffer = io.StringIO()
        write_rows_csv(buffer, [])
        assert buffer.getvalue() == ",".join(OUTPUT_COLUMNS) + "\n"

    def test_written_rows_read_back(self) -> None:
        rows = [
            OutputRow(email="a@x.com", company="Acme", status="ok", sources='["https://a"]'),
            OutputRow(email="b@x.com", status="error", error="line1\nline2"),
        ]
        assert read_rows_csv(rows_to_csv_bytes(rows)) == rows

    def test_read_rows_ignores_extra_columns(self) -> None:
        header = ",".join((*OUTPUT_COLUMNS, "run_id"))
        data = f"{header}\na@x.com,,Acme,,,,ok,,m,,,run-1\n"
        [row] = read_rows_csv(data)
        assert row.company == "Acme"
        assert row.model == "m"

    def test_read_rows_requires_every_output_column(self) -> None:
        with pytest.raises(CSVFormatError, match="missing required column 'status'"):
            read_rows_csv("email,company\na@x.com,Acme\n")

    def test_short_records_fill_blanks(self) -> None:
        data = ",".join(OUTPUT_COLUMNS) + "\na@x.com,url\n"
        [row] = read_rows_csv(data)
        assert row.linkedin_url == "url"
        assert row.status == ""
