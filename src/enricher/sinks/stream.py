# src/enricher/sinks/stream.py
"""Stream sink: one record published per fresh row, as it completes."""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from enricher.contracts.results import OutputRow
from enricher.core.config import WriteMode
from enricher.core.context import RunContext
from enricher.core.logging import get_logger
from enricher.engine.incremental import index_rows
from enricher.engine.retry import RetryManager
from enricher.platform.client import PlatformClient
from enricher.platform.env import DatasetRef
from enricher.platform.errors import PlatformHTTPError, is_forbidden

logger = get_logger(__name__)


def rfc3339_now() -> str:
    """Current UTC time, e.g. 2026-01-02T03:04:05.123456Z."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class StreamSink:
    """Publishes rows to a stream-proxy stream.

    Rows served from the incremental cache are not republished; only rows
    passed to publish() are written.
    """

    mode = WriteMode.STREAM
    publishes_per_row = True

    def __init__(
        self,
        client: PlatformClient,
        target: DatasetRef,
        retry: RetryManager,
        *,
        run_id: str,
        clock: Callable[[], str] = rfc3339_now,
    ) -> None:
        self._client = client
        self._target = target
        self._retry = retry
        self._run_id = run_id
        self._clock = clock
        self._lock = threading.Lock()
        self.published = 0

    def load_cache(self, ctx: RunContext) -> dict[str, OutputRow]:
        """Rows from the records currently visible on the stream.

        Permission denied on the read yields an empty cache: a publisher
        may be allowed to write a stream it cannot read back.

        Raises:
            PlatformHTTPError: For failures other than 403
            RecordDecodeError: If the response has an unknown shape
        """
        rid, branch = self._target.rid, self._target.branch
        try:
            records = self._retry.call(
                "readStreamRecords",
                lambda: self._client.read_stream_records(rid, branch),
                ctx=ctx,
            )
        except PlatformHTTPError as e:
            if is_forbidden(e):
                logger.warning("Stream records not readable; continuing with empty cache", rid=rid, branch=branch)
                return {}
            raise

        cache = index_rows(OutputRow.from_mapping(record) for record in records)
        logger.info("Loaded prior stream rows", records=len(records), rows=len(cache), rid=rid, branch=branch)
        return cache

    def publish(self, row: OutputRow, ctx: RunContext) -> None:
        """Publish one row, retrying transient failures."""
        rid, branch = self._target.rid, self._target.branch
        record = row.to_stream_record(run_id=self._run_id, written_at=self._clock())
        self._retry.call(
            "publishStreamRecord",
            lambda: self._client.publish_stream_record(rid, branch, record),
            ctx=ctx,
        )
        with self._lock:
            self.published += 1
        logger.debug("Stream row published", email=row.email, status=row.status)

    def finish(self, rows: Sequence[OutputRow], ctx: RunContext) -> None:
        """Nothing left to write; every fresh row was published as it completed."""
