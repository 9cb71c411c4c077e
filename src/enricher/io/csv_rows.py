# src/enricher/io/csv_rows.py
"""CSV reading and writing for input emails and output rows.

Input files need a header row with an "email" column (matched case
insensitively, surrounding whitespace ignored). Output files always use
the OUTPUT_COLUMNS header, in order.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Iterable
from typing import TextIO

from enricher.contracts.results import OUTPUT_COLUMNS, OutputRow

EMAIL_COLUMN = "email"


class CSVFormatError(ValueError):
    """CSV content does not match the expected layout."""


def _text_stream(source: bytes | str | TextIO) -> TextIO:
    if isinstance(source, bytes):
        # utf-8-sig drops a leading BOM written by spreadsheet exports
        return io.StringIO(source.decode("utf-8-sig"), newline="")
    if isinstance(source, str):
        return io.StringIO(source, newline="")
    return source


def read_emails_csv(source: bytes | str | TextIO) -> list[str]:
    """Values of the first "email" column, in file order.

    Values are returned as written; callers trim them. Blank lines are
    skipped.

    Raises:
        CSVFormatError: If the header is missing, has no email column,
            or a row is too short to hold the email cell
    """
    reader = csv.reader(_text_stream(source))
    try:
        header = next(reader)
    except StopIteration:
        raise CSVFormatError("read header: input is empty") from None
    except csv.Error as e:
        raise CSVFormatError(f"read header: {e}") from e

    email_index = next((i for i, name in enumerate(header) if name.strip().lower() == EMAIL_COLUMN), -1)
    if email_index < 0:
        raise CSVFormatError(f"missing required column {EMAIL_COLUMN!r}")

    emails: list[str] = []
    try:
        for record in reader:
            if not record:
                continue
            if email_index >= len(record):
                raise CSVFormatError(f"row has {len(record)} columns, want at least {email_index + 1}")
            emails.append(record[email_index])
    except csv.Error as e:
        raise CSVFormatError(f"read row {reader.line_num}: {e}") from e
    return emails


def write_rows_csv(stream: TextIO, rows: Iterable[OutputRow]) -> None:
    """Write the OUTPUT_COLUMNS header followed by one record per row."""
    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow(OUTPUT_COLUMNS)
    for row in rows:
        writer.writerow(row.as_record())


def rows_to_csv_bytes(rows: Iterable[OutputRow]) -> bytes:
    buffer = io.StringIO(newline="")
    write_rows_csv(buffer, rows)
    return buffer.getvalue().encode("utf-8")


def read_rows_csv(source: bytes | str | TextIO) -> list[OutputRow]:
    """Parse rows previously written by write_rows_csv.

    Extra columns are ignored; every OUTPUT_COLUMNS column must be present.
    Short records leave their missing cells empty.

    Raises:
        CSVFormatError: If the header is missing or lacks a required column
    """
    reader = csv.reader(_text_stream(source))
    try:
        header = next(reader)
    except StopIteration:
        raise CSVFormatError("read header: input is empty") from None
    except csv.Error as e:
        raise CSVFormatError(f"read header: {e}") from e

    index = {name.strip(): i for i, name in enumerate(header)}
    for column in OUTPUT_COLUMNS:
        if column not in index:
            raise CSVFormatError(f"missing required column {column!r}")

    rows: list[OutputRow] = []
    try:
        for record in reader:
            if not record:
                continue
            values = {column: record[index[column]] if index[column] < len(record) else "" for column in OUTPUT_COLUMNS}
            rows.append(OutputRow(**values))
    except csv.Error as e:
        raise CSVFormatError(f"read row {reader.line_num}: {e}") from e
    return rows
