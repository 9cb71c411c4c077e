# src/enricher/sinks/base.py
"""Output sink protocol shared by snapshot and stream sinks."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from enricher.contracts.results import OutputRow
from enricher.core.config import WriteMode
from enricher.core.context import RunContext


class OutputSink(Protocol):
    """Destination for one run's output rows.

    The orchestrator calls load_cache() once before any enrichment, then
    publish() for each fresh row as it completes (only when
    publishes_per_row is True), then finish() with the full row set.

    Attributes:
        mode: Write mode this sink implements
        publishes_per_row: Whether rows are written as they complete
    """

    mode: WriteMode
    publishes_per_row: bool

    def load_cache(self, ctx: RunContext) -> dict[str, OutputRow]:
        """Prior rows keyed by identifier."""
        ...

    def publish(self, row: OutputRow, ctx: RunContext) -> None:
        """Write one fresh row immediately."""
        ...

    def finish(self, rows: Sequence[OutputRow], ctx: RunContext) -> None:
        """Write the final row set, in input order."""
        ...
