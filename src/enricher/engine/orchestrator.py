# src/enricher/engine/orchestrator.py
"""Run orchestration for platform and local modes.

Platform run sequence:
1. Read input emails from the input dataset (any failure is fatal)
2. Resolve the output write mode (dataset or stream)
3. Load the incremental cache from the output sink
4. Plan: reuse cached ok rows, enrich the rest through the worker pool
   (stream mode publishes each fresh row as it completes)
5. Merge fresh rows into the plan
6. Dataset mode writes all rows through a transaction

Worker pool failures follow the configured failure policy. Under
partial_output the run still writes every row, including error rows.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from enricher.contracts.errors import EmptyIdentifierError
from enricher.contracts.results import EnrichmentResult, ItemResult, OutputRow
from enricher.core.config import DEFAULT_OUTPUT_FILENAME, OutputSettings, WriteMode
from enricher.core.context import RunContext
from enricher.core.logging import bind_run_context, get_logger
from enricher.enrich.base import Enricher
from enricher.enrich.traced import TracedEnricher
from enricher.engine.incremental import IncrementalPlan
from enricher.engine.retry import RetryConfig, RetryManager
from enricher.engine.rows import row_from_item, rows_from_items
from enricher.io.csv_rows import read_emails_csv, write_rows_csv
from enricher.platform.client import PlatformClient
from enricher.platform.env import DatasetRef, PlatformEnv
from enricher.platform.errors import is_transient
from enricher.pooling.config import PoolConfig
from enricher.pooling.executor import WorkerPool
from enricher.sinks.base import OutputSink
from enricher.sinks.snapshot import SnapshotSink
from enricher.sinks.stream import StreamSink

logger = get_logger(__name__)


def new_run_id() -> str:
    return f"run-{time.time_ns()}"


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 1)


def count_statuses(rows: Sequence[OutputRow]) -> tuple[int, int]:
    """(ok, error) row counts; any status other than ok counts as error."""
    ok = sum(1 for row in rows if row.is_ok)
    return ok, len(rows) - ok


@dataclass(frozen=True)
class RunSummary:
    """Outcome of one run, for logs and tests.

    Attributes:
        run_id: Identifier stamped on stream records and log lines
        mode: Resolved write mode (dataset, stream, or None for local runs)
        input_rows: Identifiers read from input
        cached_rows: Input positions served from the incremental cache
        pending_rows: Input positions that needed enrichment
        enriched: Unique identifiers sent through the worker pool
        ok_rows: Final rows with status ok
        error_rows: Final rows with any other status
        published: Records published to a stream
        transaction_rid: Dataset transaction written, if any
        committed: Whether this run committed that transaction
    """

    run_id: str
    mode: WriteMode | None
    input_rows: int
    cached_rows: int
    pending_rows: int
    enriched: int
    ok_rows: int
    error_rows: int
    published: int = 0
    transaction_rid: str | None = None
    committed: bool = False


def make_processor(enricher: Enricher) -> Callable[[RunContext, str], EnrichmentResult]:
    """Per-item pool function: trims the email and rejects blanks.

    Blank identifiers raise EmptyIdentifierError without calling the
    enricher, so they are terminal and never retried.
    """

    def process(ctx: RunContext, email: str) -> EnrichmentResult:
        email = email.strip()
        if not email:
            raise EmptyIdentifierError()
        return enricher.enrich(ctx, email)

    return process


def resolve_output_mode(
    client: PlatformClient,
    target: DatasetRef,
    requested: WriteMode | str | None,
    retry: RetryManager,
    ctx: RunContext | None = None,
) -> WriteMode:
    """Decide between dataset and stream output.

    auto (or blank) probes the stream records endpoint: success means
    stream, 404 means dataset.

    Raises:
        ConfigurationError: If requested is not auto, dataset or stream
        PlatformHTTPError: If the probe fails with anything but 404
    """
    mode = requested if isinstance(requested, WriteMode) else WriteMode.parse(requested)
    if mode is not WriteMode.AUTO:
        return mode
    is_stream = retry.call("probeStream", lambda: client.probe_stream(target.rid, target.branch), ctx=ctx)
    return WriteMode.STREAM if is_stream else WriteMode.DATASET


def read_input_emails(
    client: PlatformClient,
    source: DatasetRef,
    retry: RetryManager,
    ctx: RunContext | None = None,
) -> list[str]:
    """Email column of the input dataset's current snapshot.

    Raises:
        PlatformHTTPError: On any read failure, including 403 and 404
        CSVFormatError: If the input has no email column
    """
    data = retry.call("readInput", lambda: client.read_table_csv(source.rid, source.branch), ctx=ctx)
    return read_emails_csv(data)


class PlatformRunner:
    """Runs one platform-mode enrichment batch.

    Example:
        with PlatformClient.from_env(env) as client:
            runner = PlatformRunner(client, env, enricher, pool_config, OutputSettings())
            summary = runner.run()
    """

    def __init__(
        self,
        client: PlatformClient,
        env: PlatformEnv,
        enricher: Enricher,
        pool_config: PoolConfig,
        output: OutputSettings,
        *,
        retry: RetryManager | None = None,
        run_id: str | None = None,
    ) -> None:
        self._client = client
        self._env = env
        self._enricher = enricher
        self._pool_config = pool_config
        self._output = output
        self._retry = retry or RetryManager(RetryConfig(), is_retryable=is_transient)
        self.run_id = run_id or new_run_id()

    def _make_sink(self, mode: WriteMode, target: DatasetRef) -> OutputSink:
        if mode is WriteMode.STREAM:
            return StreamSink(self._client, target, self._retry, run_id=self.run_id)
        return SnapshotSink(self._client, target, self._retry, filename=self._output.filename or DEFAULT_OUTPUT_FILENAME)

    def run(self, ctx: RunContext | None = None) -> RunSummary:
        """Execute the run.

        Raises:
            ConfigurationError: If an alias or the write mode is invalid
            PlatformHTTPError: For fatal platform failures
            MaxRetriesExceeded: If a platform call keeps failing transiently
            ConsistencyError: If enrichment results do not match the plan
            Exception: The first item failure under fail_fast
        """
        ctx = ctx or RunContext()
        run_start = time.perf_counter()
        source = self._env.resolve_alias(self._output.input_alias)
        target = self._env.resolve_alias(self._output.output_alias)
        bind_run_context(run_id=self.run_id)
        logger.info(
            "Platform run started",
            input=f"{source.rid}@{source.branch}",
            output=f"{target.rid}@{target.branch}",
            write_mode=str(self._output.write_mode),
            workers=self._pool_config.workers,
            max_retries=self._pool_config.max_retries,
            timeout_seconds=self._pool_config.request_timeout_seconds,
            rate_limit_rps=self._pool_config.rate_limit_rps,
            failure_policy=str(self._pool_config.failure_policy),
        )

        step = time.perf_counter()
        emails = read_input_emails(self._client, source, self._retry, ctx)
        logger.info("Loaded input emails", rows=len(emails), duration_ms=_elapsed_ms(step))

        step = time.perf_counter()
        mode = resolve_output_mode(self._client, target, self._output.write_mode, self._retry, ctx)
        bind_run_context(mode=str(mode))
        logger.info("Resolved output mode", mode=str(mode), duration_ms=_elapsed_ms(step))

        sink = self._make_sink(mode, target)
        cache = sink.load_cache(ctx)

        plan = IncrementalPlan.build(emails, cache)
        logger.info(
            "Incremental plan",
            input_rows=len(emails),
            cached_rows=plan.cached_count,
            rows_to_enrich=plan.pending_count,
            unique_emails_to_enrich=len(plan.pending),
        )

        step = time.perf_counter()
        rows = self._enrich(plan, sink, ctx)
        ok_rows, error_rows = count_statuses(rows)
        logger.info(
            "Enrichment complete",
            produced=len(rows),
            ok=ok_rows,
            error=error_rows,
            duration_ms=_elapsed_ms(step),
        )

        step = time.perf_counter()
        sink.finish(rows, ctx)

        transaction = sink.transaction if isinstance(sink, SnapshotSink) else None
        published = sink.published if isinstance(sink, StreamSink) else 0
        logger.info(
            "Platform run complete",
            mode=str(mode),
            published=published,
            transaction=transaction.rid if transaction else None,
            write_duration_ms=_elapsed_ms(step),
            total_duration_ms=_elapsed_ms(run_start),
        )
        return RunSummary(
            run_id=self.run_id,
            mode=mode,
            input_rows=len(emails),
            cached_rows=plan.cached_count,
            pending_rows=plan.pending_count,
            enriched=len(plan.pending),
            ok_rows=ok_rows,
            error_rows=error_rows,
            published=published,
            transaction_rid=transaction.rid if transaction else None,
            committed=transaction.committed if transaction else False,
        )

    def _enrich(self, plan: IncrementalPlan, sink: OutputSink, ctx: RunContext) -> list[OutputRow]:
        if not plan.pending:
            return plan.final_rows()

        enricher = TracedEnricher(self._enricher)
        process = make_processor(enricher)
        model = self._enricher.model
        total = len(plan.pending)

        with WorkerPool(self._pool_config) as pool:
            if not sink.publishes_per_row:
                results = pool.run(plan.pending, process, ctx=ctx)
            else:
                completed = 0

                def on_result(result: ItemResult[str, EnrichmentResult]) -> None:
                    nonlocal completed
                    completed += 1
                    row = row_from_item(result, model=model)
                    logger.info(
                        "Stream row enriched",
                        email=row.email,
                        status=row.status,
                        completed=completed,
                        total=total,
                    )
                    sink.publish(row, ctx)

                results = pool.run_streaming(plan.pending, process, on_result, ctx=ctx)
            logger.debug("Worker pool stats", **pool.last_stats.as_dict())

        return plan.apply(rows_from_items(results, model=model))


def run_platform(
    env: PlatformEnv,
    enricher: Enricher,
    pool_config: PoolConfig,
    output: OutputSettings,
    *,
    ctx: RunContext | None = None,
    **client_kwargs: Any,
) -> RunSummary:
    """Build a client from env and execute one platform run."""
    with PlatformClient.from_env(env, **client_kwargs) as client:
        return PlatformRunner(client, env, enricher, pool_config, output).run(ctx)


def run_local(
    input_path: Path,
    output_path: Path,
    enricher: Enricher,
    pool_config: PoolConfig,
    *,
    ctx: RunContext | None = None,
) -> RunSummary:
    """Enrich a local CSV of emails into a local output CSV.

    No incremental cache is used; every input row is enriched.

    Raises:
        OSError: If a file cannot be read or written
        CSVFormatError: If the input has no email column
        Exception: The first item failure under fail_fast
    """
    run_id = new_run_id()
    bind_run_context(run_id=run_id)
    start = time.perf_counter()

    emails = read_emails_csv(input_path.read_bytes())
    logger.info("Loaded input emails", rows=len(emails), path=str(input_path))

    process = make_processor(TracedEnricher(enricher))
    with WorkerPool(pool_config) as pool:
        results = pool.run(emails, process, ctx=ctx)
    rows = rows_from_items(results, model=enricher.model)

    with output_path.open("w", newline="", encoding="utf-8") as stream:
        write_rows_csv(stream, rows)

    ok_rows, error_rows = count_statuses(rows)
    logger.info(
        "Local run complete",
        produced=len(rows),
        ok=ok_rows,
        error=error_rows,
        output=str(output_path),
        duration_ms=_elapsed_ms(start),
    )
    return RunSummary(
        run_id=run_id,
        mode=None,
        input_rows=len(emails),
        cached_rows=0,
        pending_rows=len(emails),
        enriched=len(emails),
        ok_rows=ok_rows,
        error_rows=error_rows,
    )
