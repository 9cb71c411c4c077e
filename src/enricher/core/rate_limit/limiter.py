"""Global request rate limiter around pyrate-limiter."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import structlog
from pyrate_limiter import Duration, InMemoryBucket, Limiter, Rate

if TYPE_CHECKING:
    from types import TracebackType

    from enricher.core.context import RunContext

# Upper bound on a single wait between acquisition attempts
_MAX_POLL_SECONDS = 0.05

_original_excepthook = threading.excepthook

# Leaker thread idents registered for exception suppression during close()
_suppressed_thread_idents: set[int] = set()
_suppressed_lock = threading.Lock()


def _custom_excepthook(args: threading.ExceptHookArgs) -> None:
    """Suppress the benign AssertionError pyrate-limiter's leaker raises on dispose.

    Only threads registered by RateLimiter.close() are covered, once each.
    """
    thread_ident = args.thread.ident if args.thread else None
    with _suppressed_lock:
        if thread_ident is not None and thread_ident in _suppressed_thread_idents and args.exc_type is AssertionError:
            _suppressed_thread_idents.discard(thread_ident)
            structlog.get_logger(__name__).debug(
                "Suppressed expected pyrate-limiter cleanup exception",
                thread_ident=thread_ident,
            )
            return
    _original_excepthook(args)


threading.excepthook = _custom_excepthook


def _interval_ms(requests_per_second: float) -> int:
    """Milliseconds between single-token refills for a fractional RPS."""
    return max(1, round(Duration.SECOND / requests_per_second))


class RateLimiter:
    """Process-wide request rate limiter shared by all pool workers.

    Admits one request per 1/requests_per_second seconds with a burst of
    one, so a rate of 0.5 admits a request every two seconds.

    Example:
        with RateLimiter("gemini", requests_per_second=5) as limiter:
            limiter.acquire(ctx)
            call_api()
    """

    def __init__(self, name: str, requests_per_second: float) -> None:
        """Initialize rate limiter.

        Args:
            name: Bucket key, used in log lines
            requests_per_second: Admission rate, must be > 0

        Raises:
            ValueError: If requests_per_second is not positive.
        """
        if requests_per_second <= 0:
            msg = f"requests_per_second must be positive, got {requests_per_second}"
            raise ValueError(msg)

        self.name = name
        self._requests_per_second = requests_per_second
        self._interval_ms = _interval_ms(requests_per_second)
        self._lock = threading.Lock()

        self._bucket = InMemoryBucket([Rate(1, self._interval_ms)])
        # Non-blocking: waiting happens in acquire() so it can observe cancellation
        self._limiter = Limiter(self._bucket, raise_when_fail=False, max_delay=None)

    @property
    def requests_per_second(self) -> float:
        return self._requests_per_second

    def try_acquire(self) -> bool:
        """Take a token without blocking.

        Returns:
            True if admitted, False if rate limited
        """
        with self._lock:
            return bool(self._limiter.try_acquire(self.name))

    def acquire(self, ctx: RunContext) -> None:
        """Block until admitted or the context finishes.

        Raises:
            Cancelled: If ctx is cancelled while waiting
            DeadlineExceeded: If ctx's deadline passes while waiting
        """
        poll = min(_MAX_POLL_SECONDS, self._interval_ms / 1000 / 4)
        while True:
            ctx.check()
            if self.try_acquire():
                return
            if ctx.wait(poll):
                ctx.check()

    def close(self) -> None:
        """Dispose the bucket and stop pyrate-limiter's leaker thread."""
        leaker = self._limiter.bucket_factory._leaker
        if leaker is not None and leaker.is_alive() and leaker.ident is not None:
            with _suppressed_lock:
                _suppressed_thread_idents.add(leaker.ident)
        self._limiter.dispose(self._bucket)
        if leaker is not None:
            leaker.join(timeout=0.05)

    def __enter__(self) -> RateLimiter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


class NoOpLimiter:
    """Limiter used when rate limiting is disabled.

    Same interface as RateLimiter; acquire() only checks the context.
    """

    def try_acquire(self) -> bool:
        return True

    def acquire(self, ctx: RunContext) -> None:
        ctx.check()

    def close(self) -> None:
        """Nothing to release."""

    def __enter__(self) -> NoOpLimiter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


def create_limiter(name: str, requests_per_second: float) -> RateLimiter | NoOpLimiter:
    """RateLimiter for a positive rate, NoOpLimiter when rate <= 0."""
    if requests_per_second <= 0:
        return NoOpLimiter()
    return RateLimiter(name, requests_per_second)
