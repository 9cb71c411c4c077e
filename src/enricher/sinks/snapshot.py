# src/enricher/sinks/snapshot.py
"""Dataset snapshot sink: full-replace CSV written through a transaction.

Write protocol:
1. Create a SNAPSHOT transaction.
2. If the platform answers that a transaction is already open, use the
   newest OPEN transaction instead and remember it is not ours.
3. Upload the CSV as the transaction's single file.
4. Commit, but only a transaction this run created. A pre-existing
   transaction is left open for whoever opened it.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace

from enricher.contracts.errors import EnricherError
from enricher.contracts.results import OutputRow
from enricher.core.config import DEFAULT_OUTPUT_FILENAME, WriteMode
from enricher.core.context import RunContext
from enricher.core.logging import get_logger
from enricher.engine.incremental import index_rows
from enricher.engine.retry import RetryManager
from enricher.io.csv_rows import CSVFormatError, read_rows_csv, rows_to_csv_bytes
from enricher.platform.client import PlatformClient
from enricher.platform.env import DatasetRef
from enricher.platform.errors import PlatformHTTPError, is_not_found, is_open_transaction_conflict

logger = get_logger(__name__)


class OpenTransactionNotFoundError(EnricherError):
    """Create reported an open transaction, but listing found none."""


@dataclass(frozen=True, slots=True)
class TransactionHandle:
    """A write scope on the output dataset.

    Attributes:
        rid: Transaction RID
        created_by_us: False for a pre-existing transaction, which must
            never be committed by this run
        committed: Whether this run committed it
    """

    rid: str
    created_by_us: bool
    committed: bool = False


class SnapshotSink:
    """Writes all rows as one CSV file into a dataset transaction."""

    mode = WriteMode.DATASET
    publishes_per_row = False

    def __init__(
        self,
        client: PlatformClient,
        target: DatasetRef,
        retry: RetryManager,
        *,
        filename: str = DEFAULT_OUTPUT_FILENAME,
    ) -> None:
        self._client = client
        self._target = target
        self._retry = retry
        self._filename = filename.strip() or DEFAULT_OUTPUT_FILENAME
        self.transaction: TransactionHandle | None = None

    def load_cache(self, ctx: RunContext) -> dict[str, OutputRow]:
        """Rows from the dataset's current snapshot.

        A missing dataset or branch (404) is a first run and yields an
        empty cache. Any other read failure is fatal.

        Raises:
            PlatformHTTPError: For non-404 failures
            CSVFormatError: If the prior CSV lacks the output columns
        """
        rid, branch = self._target.rid, self._target.branch
        try:
            data = self._retry.call("readPriorOutput", lambda: self._client.read_table_csv(rid, branch), ctx=ctx)
        except PlatformHTTPError as e:
            if is_not_found(e):
                logger.info("No prior output snapshot found", rid=rid, branch=branch)
                return {}
            raise

        if not data.strip():
            logger.info("Prior output snapshot is empty", rid=rid, branch=branch)
            return {}
        try:
            cache = index_rows(read_rows_csv(data))
        except CSVFormatError as e:
            raise CSVFormatError(f"parse prior output csv: {e}") from e
        logger.info("Loaded prior output rows", rows=len(cache), rid=rid, branch=branch)
        return cache

    def publish(self, row: OutputRow, ctx: RunContext) -> None:
        """Snapshots are written once, in finish()."""

    def finish(self, rows: Sequence[OutputRow], ctx: RunContext) -> None:
        self.write_csv(rows_to_csv_bytes(rows), ctx)

    def write_csv(self, content: bytes, ctx: RunContext) -> TransactionHandle:
        """Upload content through the transaction protocol.

        Returns:
            The transaction used, with committed set if this run committed it

        Raises:
            OpenTransactionNotFoundError: If a conflicting transaction cannot be found
            PlatformHTTPError: For non-transient failures
        """
        rid = self._target.rid
        handle = self._open_transaction(ctx)
        self.transaction = handle

        self._retry.call(
            "uploadFile",
            lambda: self._client.upload_file(rid, handle.rid, self._filename, content),
            ctx=ctx,
        )
        logger.info("Uploaded output file", rid=rid, transaction=handle.rid, filename=self._filename, size=len(content))

        if not handle.created_by_us:
            logger.warning("Leaving pre-existing transaction open for its owner to commit", transaction=handle.rid)
            return handle

        self._retry.call("commitTransaction", lambda: self._client.commit_transaction(rid, handle.rid), ctx=ctx)
        handle = replace(handle, committed=True)
        self.transaction = handle
        logger.info("Committed output transaction", rid=rid, transaction=handle.rid)
        return handle

    def _open_transaction(self, ctx: RunContext) -> TransactionHandle:
        rid, branch = self._target.rid, self._target.branch
        try:
            txn_rid = self._retry.call(
                "createTransaction",
                lambda: self._client.create_transaction(rid, branch),
                ctx=ctx,
            )
        except PlatformHTTPError as e:
            if not is_open_transaction_conflict(e):
                raise
            logger.info("Output dataset already has an open transaction", rid=rid, error_name=e.error_name)
        else:
            return TransactionHandle(rid=txn_rid, created_by_us=True)

        existing = self._retry.call(
            "listTransactions",
            lambda: self._client.find_latest_open_transaction(rid),
            ctx=ctx,
        )
        if not existing:
            raise OpenTransactionNotFoundError(
                "output dataset has an open transaction but no OPEN transaction was returned by listTransactions"
            )
        return TransactionHandle(rid=existing, created_by_us=False)
