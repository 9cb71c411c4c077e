# src/enricher/contracts/__init__.py
"""Shared data model and error taxonomy."""

from enricher.contracts.errors import (
    ConfigurationError,
    ConsistencyError,
    EmptyIdentifierError,
    EnricherError,
    RetryableError,
)
from enricher.contracts.results import (
    OUTPUT_COLUMNS,
    EnrichmentResult,
    ItemResult,
    OutputRow,
    RowStatus,
)

__all__ = [
    "OUTPUT_COLUMNS",
    "ConfigurationError",
    "ConsistencyError",
    "EmptyIdentifierError",
    "EnricherError",
    "EnrichmentResult",
    "ItemResult",
    "OutputRow",
    "RetryableError",
    "RowStatus",
]
