# src/enricher/io/__init__.py
"""Tabular encodings for input identifiers and output rows."""

from enricher.io.csv_rows import CSVFormatError, read_emails_csv, read_rows_csv, rows_to_csv_bytes, write_rows_csv

__all__ = ["CSVFormatError", "read_emails_csv", "read_rows_csv", "rows_to_csv_bytes", "write_rows_csv"]
