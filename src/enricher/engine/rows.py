# src/enricher/engine/rows.py
"""Conversion of worker pool results into output rows."""

from __future__ import annotations

from collections.abc import Iterable

from enricher.contracts.results import EnrichmentResult, ItemResult, OutputRow
from enricher.core.redact import redact


def row_from_item(result: ItemResult[str, EnrichmentResult], *, model: str = "") -> OutputRow:
    """One output row for one pool result.

    Failed items become error rows carrying the redacted error text and
    the enricher's model name.
    """
    email = result.item.strip()
    if result.error is not None:
        return OutputRow.from_error(email, redact(str(result.error)), EnrichmentResult(model=model))
    assert result.value is not None, "successful ItemResult without a value"
    return OutputRow.from_result(email, result.value)


def rows_from_items(results: Iterable[ItemResult[str, EnrichmentResult]], *, model: str = "") -> list[OutputRow]:
    return [row_from_item(result, model=model) for result in results]
