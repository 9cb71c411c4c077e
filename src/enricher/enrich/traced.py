# src/enricher/enrich/traced.py
"""Logging decorator around an Enricher."""

from __future__ import annotations

import threading
import time
from collections import Counter

from enricher.contracts.results import EnrichmentResult
from enricher.core.context import RunContext
from enricher.core.logging import get_logger
from enricher.core.redact import redact
from enricher.enrich.base import Enricher

logger = get_logger(__name__)


class TracedEnricher:
    """Logs each attempt of the wrapped enricher with its duration.

    Attempts are numbered per email, so retries of the same email show
    attempt=2, 3, ... in the log.
    """

    def __init__(self, inner: Enricher) -> None:
        self._inner = inner
        self.model = inner.model
        self._attempts: Counter[str] = Counter()
        self._lock = threading.Lock()

    def enrich(self, ctx: RunContext, email: str) -> EnrichmentResult:
        with self._lock:
            self._attempts[email] += 1
            attempt = self._attempts[email]

        logger.debug("Enrichment started", email=email, attempt=attempt)
        start = time.perf_counter()
        try:
            result = self._inner.enrich(ctx, email)
        except Exception as e:
            logger.info(
                "Enrichment attempt failed",
                email=email,
                attempt=attempt,
                duration_ms=round((time.perf_counter() - start) * 1000, 1),
                error_type=type(e).__name__,
                error=redact(str(e)),
            )
            raise
        logger.debug(
            "Enrichment finished",
            email=email,
            attempt=attempt,
            duration_ms=round((time.perf_counter() - start) * 1000, 1),
            sources=len(result.sources),
        )
        return result
