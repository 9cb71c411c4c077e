# src/enricher/enrich/base.py
"""Enricher protocol."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from enricher.contracts.results import EnrichmentResult
from enricher.core.context import RunContext


@runtime_checkable
class Enricher(Protocol):
    """Enriches one identifier per call.

    Implementations make exactly one upstream attempt per call; the worker
    pool owns retries and backoff. Transient upstream failures must be
    raised as RetryableError (or a recognised transient exception) so the
    pool retries them; anything else is terminal for the item.

    Attributes:
        model: Name recorded in output rows, including error rows
    """

    model: str

    def enrich(self, ctx: RunContext, email: str) -> EnrichmentResult:
        """Enrich one email.

        Args:
            ctx: Per-attempt context; ctx.remaining() is the time budget
            email: Identifier, already trimmed by the caller

        Raises:
            EmptyIdentifierError: If email is blank
            RetryableError: For transient upstream failures
        """
        ...
