# src/enricher/contracts/results.py
"""Result and row types shared across the pool, planner and sinks."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Self

# Stable column order for every tabular rendering of OutputRow.
OUTPUT_COLUMNS: tuple[str, ...] = (
    "email",
    "linkedin_url",
    "company",
    "title",
    "description",
    "confidence",
    "status",
    "error",
    "model",
    "sources",
    "web_search_queries",
)


class RowStatus(StrEnum):
    """Outcome of one identifier."""

    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class EnrichmentResult:
    """Structured output of enriching one email.

    Attributes:
        linkedin_url: Profile URL if one was found
        company: Employer name
        title: Job title
        description: Short free-text summary
        confidence: low | medium | high as reported by the model
        model: Model that produced the result
        sources: Provenance URLs, de-duplicated, in discovery order
        web_search_queries: Search queries the model issued
    """

    linkedin_url: str = ""
    company: str = ""
    title: str = ""
    description: str = ""
    confidence: str = ""
    model: str = ""
    sources: tuple[str, ...] = ()
    web_search_queries: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ItemResult[In, Out]:
    """Outcome of one work item from the worker pool.

    Exactly one of value/error is meaningful: error is None on success.
    """

    index: int
    item: In
    value: Out | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _json_array_or_empty(values: tuple[str, ...]) -> str:
    if not values:
        return ""
    return json.dumps(list(values), separators=(",", ":"))


@dataclass(frozen=True, slots=True)
class OutputRow:
    """Sink-independent representation of one identifier's outcome.

    sources and web_search_queries hold JSON-encoded arrays (or "") so the
    row round-trips through CSV and stream records unchanged.
    """

    email: str
    linkedin_url: str = ""
    company: str = ""
    title: str = ""
    description: str = ""
    confidence: str = ""
    status: str = RowStatus.OK
    error: str = ""
    model: str = ""
    sources: str = ""
    web_search_queries: str = ""
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_result(cls, email: str, result: EnrichmentResult) -> Self:
        return cls(
            email=email,
            linkedin_url=result.linkedin_url,
            company=result.company,
            title=result.title,
            description=result.description,
            confidence=result.confidence,
            status=RowStatus.OK,
            model=result.model,
            sources=_json_array_or_empty(result.sources),
            web_search_queries=_json_array_or_empty(result.web_search_queries),
        )

    @classmethod
    def from_error(cls, email: str, message: str, partial: EnrichmentResult | None = None) -> Self:
        partial = partial or EnrichmentResult()
        return cls(
            email=email,
            status=RowStatus.ERROR,
            error=message,
            model=partial.model,
            sources=_json_array_or_empty(partial.sources),
            web_search_queries=_json_array_or_empty(partial.web_search_queries),
        )

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> Self:
        """Build a row from a CSV record or a decoded stream record.

        Missing or null columns become "". Unknown keys are kept in extra.
        """
        values: dict[str, str] = {}
        for column in OUTPUT_COLUMNS:
            raw = data.get(column)
            if raw is None:
                values[column] = ""
            elif isinstance(raw, str):
                values[column] = raw
            elif isinstance(raw, list):
                values[column] = _json_array_or_empty(tuple(str(v) for v in raw))
            else:
                values[column] = str(raw)
        extra = {k: v for k, v in data.items() if k not in OUTPUT_COLUMNS}
        return cls(**values, extra=extra)

    @property
    def is_ok(self) -> bool:
        return self.status.strip().lower() == RowStatus.OK

    def with_email(self, email: str) -> OutputRow:
        return replace(self, email=email)

    def as_record(self) -> list[str]:
        """Column values in OUTPUT_COLUMNS order."""
        return [str(getattr(self, column)) for column in OUTPUT_COLUMNS]

    def to_stream_record(self, *, run_id: str, written_at: str) -> dict[str, Any]:
        """Render for stream publish; blank values become None."""
        record: dict[str, Any] = {"email": self.email}
        for column in OUTPUT_COLUMNS[1:]:
            value = str(getattr(self, column))
            record[column] = value if value.strip() else None
        record["run_id"] = run_id
        record["written_at"] = written_at
        return record
