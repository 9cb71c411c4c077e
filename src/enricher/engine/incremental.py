# src/enricher/engine/incremental.py
"""Incremental planning: reuse prior successful rows, enrich the rest.

Given the run's input identifiers and a cache of rows from the sink's
previous state, the plan splits identifiers into rows served from cache
and identifiers that still need enrichment. Fresh rows are merged back
by identifier, fanning out to every input position that shares it.

Rows whose cached status is anything other than "ok" are never reused,
so failed identifiers are retried on every run.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from enricher.contracts.errors import ConsistencyError
from enricher.contracts.results import OutputRow


def identifier_key(identifier: str) -> str:
    """Cache key for an identifier."""
    return identifier.strip()


def index_rows(rows: Iterable[OutputRow]) -> dict[str, OutputRow]:
    """Build an incremental cache from prior rows.

    Rows with a blank identifier are dropped. A later row for the same
    identifier replaces an earlier one.
    """
    cache: dict[str, OutputRow] = {}
    for row in rows:
        key = identifier_key(row.email)
        if key:
            cache[key] = row
    return cache


@dataclass
class IncrementalPlan:
    """Result of planning one run against an incremental cache.

    Attributes:
        rows: One slot per input identifier; None until filled
        pending: Unique identifiers still to enrich, in first-seen order
        cached_count: Input positions served from cache
        pending_count: Input positions waiting on enrichment
    """

    rows: list[OutputRow | None]
    pending: list[str] = field(default_factory=list)
    cached_count: int = 0
    pending_count: int = 0
    _pending_positions: dict[str, list[int]] = field(default_factory=dict, repr=False)

    @classmethod
    def build(cls, identifiers: Sequence[str], cache: Mapping[str, OutputRow]) -> IncrementalPlan:
        """Partition identifiers into cached rows and pending identifiers.

        Args:
            identifiers: Raw input identifiers in input order
            cache: Prior rows keyed by identifier_key()
        """
        plan = cls(rows=[None] * len(identifiers))
        for position, raw in enumerate(identifiers):
            identifier = raw.strip()
            key = identifier_key(identifier)

            prior = cache.get(key)
            if prior is not None and prior.is_ok:
                plan.rows[position] = prior.with_email(identifier)
                plan.cached_count += 1
                continue

            if key not in plan._pending_positions:
                plan.pending.append(identifier)
                plan._pending_positions[key] = []
            plan._pending_positions[key].append(position)
            plan.pending_count += 1
        return plan

    def row_for(self, identifier: str, row: OutputRow) -> None:
        """Place one fresh row at every position sharing its identifier.

        Raises:
            ConsistencyError: If identifier was not pending
        """
        key = identifier_key(identifier)
        positions = self._pending_positions.get(key)
        if not positions:
            raise ConsistencyError(f"incremental enrichment mismatch: missing pending indexes for {identifier!r}")
        fresh = row.with_email(identifier.strip())
        for position in positions:
            self.rows[position] = fresh

    def apply(self, fresh_rows: Sequence[OutputRow]) -> list[OutputRow]:
        """Merge one fresh row per pending identifier, in pending order.

        Raises:
            ConsistencyError: If the number of rows differs from pending,
                or any input position is left without a row
        """
        if len(fresh_rows) != len(self.pending):
            raise ConsistencyError(
                f"incremental enrichment mismatch: got {len(fresh_rows)} rows for {len(self.pending)} pending emails"
            )
        for identifier, row in zip(self.pending, fresh_rows, strict=True):
            self.row_for(identifier, row)
        return self.final_rows()

    def final_rows(self) -> list[OutputRow]:
        """All rows in input order.

        Raises:
            ConsistencyError: If any position has no row yet
        """
        missing = [i for i, row in enumerate(self.rows) if row is None]
        if missing:
            raise ConsistencyError(f"incremental plan incomplete: {len(missing)} rows missing (first index {missing[0]})")
        return [row for row in self.rows if row is not None]
