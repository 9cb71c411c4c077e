# src/enricher/pooling/executor.py
"""Bounded-concurrency worker pool with retries and failure policy.

Manages per-item processing while:
- Running a fixed number of worker threads over a shared queue
- Applying a global rate limit before every attempt
- Bounding each attempt with a per-item timeout
- Retrying retryable failures with capped, jittered exponential backoff
- Recording failures per item (partial_output) or cancelling the run (fail_fast)
- Delivering completions to an optional callback from a single thread
"""

from __future__ import annotations

import queue
import random
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from tenacity import RetryCallState, Retrying, retry_if_exception

from enricher.contracts.results import ItemResult
from enricher.core.context import Cancelled, RunContext
from enricher.core.logging import get_logger
from enricher.core.rate_limit import NoOpLimiter, RateLimiter, create_limiter
from enricher.pooling.config import PoolConfig
from enricher.pooling.errors import is_retryable, should_retry

logger = get_logger(__name__)

type ProcessFn[In, Out] = Callable[[RunContext, In], Out]
type ResultCallback[In, Out] = Callable[[ItemResult[In, Out]], None]


@dataclass(frozen=True, slots=True)
class WorkItem[In]:
    """An input item paired with its position in the input collection."""

    index: int
    item: In


# Put on the completion queue by each worker as it exits
_WORKER_EXIT = object()


class _FirstFailure:
    """Holds the first run-ending error and cancels the run when it is set."""

    def __init__(self, run_ctx: RunContext) -> None:
        self._run_ctx = run_ctx
        self._lock = threading.Lock()
        self.error: BaseException | None = None

    def record(self, error: BaseException) -> None:
        with self._lock:
            if self.error is not None:
                return
            self.error = error
        self._run_ctx.cancel(cause=error)


@dataclass
class PoolStats:
    """Counters for one pool run.

    Attributes:
        items: Input items submitted
        succeeded: Items whose final attempt succeeded
        failed: Items whose final attempt failed
        retries: Extra attempts made across all items
        max_concurrent: Peak number of items in flight
    """

    items: int = 0
    succeeded: int = 0
    failed: int = 0
    retries: int = 0
    max_concurrent: int = 0
    _active: int = field(default=0, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def item_started(self) -> None:
        with self._lock:
            self._active += 1
            self.max_concurrent = max(self.max_concurrent, self._active)

    def item_finished(self, ok: bool) -> None:
        with self._lock:
            self._active -= 1
            if ok:
                self.succeeded += 1
            else:
                self.failed += 1

    def retried(self) -> None:
        with self._lock:
            self.retries += 1

    def as_dict(self) -> dict[str, int]:
        with self._lock:
            return {
                "items": self.items,
                "succeeded": self.succeeded,
                "failed": self.failed,
                "retries": self.retries,
                "max_concurrent": self.max_concurrent,
            }


class WorkerPool:
    """Runs a per-item function over a fixed collection of items.

    Ordering:
        run() returns one ItemResult per input, indexed like the input.
        run_streaming() additionally calls on_result once per item in
        completion order, always from the calling thread.

    Failure policy:
        partial_output: a terminal failure becomes that item's ItemResult.error
            and the run continues.
        fail_fast: the first terminal failure cancels the run; workers stop
            taking new items and the failure is raised. A callback error is
            handled the same way under either policy.

    Usage:
        pool = WorkerPool(PoolConfig(workers=4, max_retries=2))
        results = pool.run(emails, lambda ctx, email: enricher.enrich(ctx, email))
        for r in results:
            print(r.index, r.item, r.value if r.ok else r.error)
    """

    def __init__(
        self,
        config: PoolConfig,
        *,
        limiter: RateLimiter | NoOpLimiter | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the pool.

        Args:
            config: Pool configuration
            limiter: Shared rate limiter; built from config.rate_limit_rps
                when omitted
            rng: Random source for backoff jitter
        """
        self._config = config
        self._owns_limiter = limiter is None
        self._limiter = limiter if limiter is not None else create_limiter("enrichment", config.rate_limit_rps)
        self._rng = rng or random.Random()
        self._rng_lock = threading.Lock()
        self._last_stats = PoolStats()

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def last_stats(self) -> PoolStats:
        """Counters from the most recent run."""
        return self._last_stats

    def close(self) -> None:
        """Release the rate limiter if this pool created it."""
        if self._owns_limiter:
            self._limiter.close()

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def run[In, Out](
        self,
        items: Iterable[In],
        process: ProcessFn[In, Out],
        *,
        ctx: RunContext | None = None,
    ) -> list[ItemResult[In, Out]]:
        """Process all items and return results in input order.

        Raises:
            Cancelled: If ctx was cancelled before all items finished
            Exception: The first terminal failure under fail_fast
        """
        return self._run(list(items), process, None, ctx)

    def run_streaming[In, Out](
        self,
        items: Iterable[In],
        process: ProcessFn[In, Out],
        on_result: ResultCallback[In, Out],
        *,
        ctx: RunContext | None = None,
    ) -> list[ItemResult[In, Out]]:
        """Process all items, calling on_result as each one completes.

        Raises:
            Cancelled: If ctx was cancelled before all items finished
            Exception: The first terminal failure under fail_fast, or the
                first exception raised by on_result
        """
        return self._run(list(items), process, on_result, ctx)

    def _run[In, Out](
        self,
        items: list[In],
        process: ProcessFn[In, Out],
        on_result: ResultCallback[In, Out] | None,
        ctx: RunContext | None,
    ) -> list[ItemResult[In, Out]]:
        parent = ctx or RunContext()
        stats = PoolStats(items=len(items))
        self._last_stats = stats
        if not items:
            parent.check()
            return []

        work: queue.SimpleQueue[WorkItem[In]] = queue.SimpleQueue()
        for index, item in enumerate(items):
            work.put(WorkItem(index, item))

        completions: queue.SimpleQueue[Any] = queue.SimpleQueue()
        worker_count = min(self._config.workers, len(items))

        # Child context so fail-fast never cancels the caller's context
        with parent.child() as run_ctx:
            failure = _FirstFailure(run_ctx)
            threads = [
                threading.Thread(
                    target=self._worker,
                    args=(run_ctx, work, completions, process, stats, failure),
                    name=f"enricher-worker-{n}",
                    daemon=True,
                )
                for n in range(worker_count)
            ]
            for thread in threads:
                thread.start()

            results: list[ItemResult[In, Out] | None] = [None] * len(items)
            exited = 0
            try:
                while exited < worker_count:
                    completion = completions.get()
                    if completion is _WORKER_EXIT:
                        exited += 1
                        continue

                    result: ItemResult[In, Out] = completion
                    results[result.index] = result
                    if on_result is None or run_ctx.cancelled:
                        continue
                    try:
                        on_result(result)
                    except Exception as exc:
                        failure.record(exc)
            except BaseException as exc:
                # Workers stop at their next cancellation check
                run_ctx.cancel(exc)
                raise
            finally:
                for thread in threads:
                    thread.join()

        logger.debug("Worker pool finished", **stats.as_dict())

        if failure.error is not None:
            raise failure.error
        parent.check()

        missing = [i for i, r in enumerate(results) if r is None]
        if missing:
            # Workers only stop early on cancellation, handled above
            raise RuntimeError(f"Worker pool lost {len(missing)} results (first index {missing[0]})")
        return [r for r in results if r is not None]

    def _worker[In, Out](
        self,
        run_ctx: RunContext,
        work: queue.SimpleQueue[WorkItem[In]],
        completions: queue.SimpleQueue[Any],
        process: ProcessFn[In, Out],
        stats: PoolStats,
        failure: _FirstFailure,
    ) -> None:
        try:
            while not run_ctx.cancelled:
                try:
                    work_item = work.get_nowait()
                except queue.Empty:
                    return
                stats.item_started()
                result = self._process_item(run_ctx, work_item, process, stats)
                stats.item_finished(result.ok)
                # Cancel before publishing so no worker dequeues another item
                if result.error is not None and self._config.fail_fast and not run_ctx.cancelled:
                    failure.record(result.error)
                completions.put(result)
        finally:
            completions.put(_WORKER_EXIT)

    def _process_item[In, Out](
        self,
        run_ctx: RunContext,
        work_item: WorkItem[In],
        process: ProcessFn[In, Out],
        stats: PoolStats,
    ) -> ItemResult[In, Out]:
        try:
            value = self._call_with_retry(run_ctx, work_item.item, process, stats)
        except Exception as exc:
            return ItemResult(index=work_item.index, item=work_item.item, error=exc)
        return ItemResult(index=work_item.index, item=work_item.item, value=value)

    def _call_with_retry[In, Out](
        self,
        run_ctx: RunContext,
        item: In,
        process: ProcessFn[In, Out],
        stats: PoolStats,
    ) -> Out:
        max_retries = self._config.max_retries

        def _stop(retry_state: RetryCallState) -> bool:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            if error is None:
                return True
            return not should_retry(error, retry_state.attempt_number - 1, max_retries)

        def _wait(retry_state: RetryCallState) -> float:
            with self._rng_lock:
                jitter = self._rng.uniform(-1.0, 1.0)
            return self._config.backoff_seconds(retry_state.attempt_number - 1, jitter)

        def _sleep(seconds: float) -> None:
            if run_ctx.wait(seconds):
                raise Cancelled(run_ctx.cause)

        def _before_sleep(retry_state: RetryCallState) -> None:
            stats.retried()
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.debug(
                "Retrying item",
                attempt=retry_state.attempt_number,
                delay_seconds=round(retry_state.upcoming_sleep, 3),
                error=str(error),
            )

        for attempt in Retrying(
            stop=_stop,
            wait=_wait,
            sleep=_sleep,
            retry=retry_if_exception(is_retryable),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                run_ctx.check()
                self._limiter.acquire(run_ctx)
                with run_ctx.child(timeout=self._config.request_timeout_seconds) as attempt_ctx:
                    return process(attempt_ctx, item)

        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover
