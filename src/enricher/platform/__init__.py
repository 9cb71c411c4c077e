# src/enricher/platform/__init__.py
"""Data platform collaborators: HTTP client, environment, errors, record decoding."""

from enricher.platform.client import PlatformClient, Transaction
from enricher.platform.env import DatasetRef, PlatformEnv, Services
from enricher.platform.errors import (
    PlatformHTTPError,
    is_forbidden,
    is_not_found,
    is_open_transaction_conflict,
    is_transient,
)
from enricher.platform.records import RecordDecodeError, parse_records_response

__all__ = [
    "DatasetRef",
    "PlatformClient",
    "PlatformEnv",
    "PlatformHTTPError",
    "RecordDecodeError",
    "Services",
    "Transaction",
    "is_forbidden",
    "is_not_found",
    "is_open_transaction_conflict",
    "is_transient",
    "parse_records_response",
]
