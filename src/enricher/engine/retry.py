# src/enricher/engine/retry.py
"""RetryManager: bounded retry for platform calls, built on tenacity.

Every dataset, transaction and stream call made by the orchestrator goes
through a RetryManager. Only transient conditions are retried (see
enricher.platform.errors.is_transient); anything else propagates on the
first failure.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from enricher.core.context import Cancelled, RunContext
from enricher.core.logging import get_logger

logger = get_logger(__name__)


class MaxRetriesExceeded(Exception):
    """Raised when max retry attempts are exceeded."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation}: max retries ({attempts}) exceeded: {last_error}")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for platform call retries.

    max_attempts is the TOTAL number of tries, not the number of retries.
    Delays double from base_delay up to max_delay, without jitter.
    """

    max_attempts: int = 8
    base_delay: float = 0.2  # seconds
    max_delay: float = 2.0  # seconds

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> RetryConfig:
        """Factory for no-retry configuration (single attempt)."""
        return cls(max_attempts=1)


class RetryManager:
    """Runs operations with retry on transient failures.

    Example:
        manager = RetryManager(RetryConfig(), is_retryable=is_transient)
        txn = manager.call("createTransaction", lambda: client.create_transaction(rid, branch), ctx=ctx)
    """

    def __init__(
        self,
        config: RetryConfig,
        *,
        is_retryable: Callable[[BaseException], bool],
    ) -> None:
        self._config = config
        self._is_retryable = is_retryable

    @property
    def config(self) -> RetryConfig:
        return self._config

    def call[T](
        self,
        operation: str,
        fn: Callable[[], T],
        *,
        ctx: RunContext | None = None,
    ) -> T:
        """Execute fn, retrying transient failures.

        Args:
            operation: Name used in logs and in MaxRetriesExceeded
            fn: Zero-argument callable performing one attempt
            ctx: Optional context; backoff sleeps end early when it is done

        Returns:
            Result of fn

        Raises:
            MaxRetriesExceeded: If every attempt failed transiently
            Cancelled: If ctx was cancelled during a backoff sleep
            Exception: The first non-transient error, unchanged
        """
        run_ctx = ctx or RunContext()

        def _sleep(seconds: float) -> None:
            if run_ctx.wait(seconds):
                raise Cancelled(run_ctx.cause)

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Transient platform error, retrying",
                operation=operation,
                attempt=retry_state.attempt_number,
                delay_seconds=round(retry_state.upcoming_sleep, 3),
                error=str(error),
            )

        attempt = 0
        try:
            for attempt_state in Retrying(
                stop=stop_after_attempt(self._config.max_attempts),
                wait=wait_exponential_jitter(
                    initial=self._config.base_delay,
                    max=self._config.max_delay,
                    exp_base=2,
                    jitter=0,
                ),
                retry=retry_if_exception(self._is_retryable),
                sleep=_sleep,
                before_sleep=_before_sleep,
                reraise=False,  # RetryError is converted to MaxRetriesExceeded
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    run_ctx.check()
                    return fn()
        except RetryError as e:
            final_error = e.last_attempt.exception()
            assert final_error is not None, "RetryError without exception is impossible"
            raise MaxRetriesExceeded(operation, attempt, final_error) from final_error

        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover
