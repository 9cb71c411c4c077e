# src/enricher/core/context.py
"""Cancellation and deadline propagation across worker threads.

A RunContext is a thread-safe token combining a cancellation flag with an
optional monotonic deadline. Child contexts inherit both: cancelling a
parent cancels every live child, and a child's deadline is never later
than its parent's.

Blocking code in the pool (rate limiter waits, backoff sleeps, per-item
processing) takes a RunContext and returns promptly once it is done.

Example:
    ctx = RunContext()
    with ctx.child(timeout=30.0) as attempt_ctx:
        result = process(attempt_ctx, item)

    # From another thread:
    ctx.cancel(cause=error)
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import TracebackType


class Cancelled(Exception):
    """The run was cancelled before the operation completed."""

    def __init__(self, cause: BaseException | None = None) -> None:
        message = "run cancelled" if cause is None else f"run cancelled: {cause}"
        super().__init__(message)
        self.cause = cause


class DeadlineExceeded(TimeoutError):
    """The operation's deadline passed before it completed."""

    def __init__(self) -> None:
        super().__init__("deadline exceeded")


class RunContext:
    """Cancellation token with an optional deadline."""

    def __init__(self, *, timeout: float | None = None, _parent: RunContext | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: set[RunContext] = set()
        self._parent = _parent
        self._cause: BaseException | None = None

        deadline = None if timeout is None else time.monotonic() + timeout
        if _parent is not None and _parent._deadline is not None:
            deadline = _parent._deadline if deadline is None else min(deadline, _parent._deadline)
        self._deadline = deadline

    @property
    def deadline(self) -> float | None:
        """Monotonic deadline, or None when unbounded."""
        return self._deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cause(self) -> BaseException | None:
        """Error that triggered cancellation, if any."""
        return self._cause

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def done(self) -> bool:
        return self.cancelled or self.expired

    def remaining(self) -> float | None:
        """Seconds until the deadline (never negative), or None."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self, cause: BaseException | None = None) -> None:
        """Cancel this context and every live child.

        Only the first cause is kept.
        """
        with self._lock:
            if self._event.is_set():
                return
            self._cause = cause
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(cause)

    def check(self) -> None:
        """Raise if this context is done.

        Raises:
            Cancelled: If the context was cancelled
            DeadlineExceeded: If the deadline has passed
        """
        if self.cancelled:
            raise Cancelled(self._cause)
        if self.expired:
            raise DeadlineExceeded()

    def error(self) -> BaseException | None:
        """The exception check() would raise, or None."""
        if self.cancelled:
            return Cancelled(self._cause)
        if self.expired:
            return DeadlineExceeded()
        return None

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds, waking early if the context finishes.

        Returns:
            True if the context is done (cancelled or expired) on return,
            False if the full interval elapsed normally.
        """
        remaining = self.remaining()
        bounded = seconds if remaining is None else min(seconds, remaining)
        if bounded > 0:
            self._event.wait(bounded)
        return self.done

    def child(self, timeout: float | None = None) -> RunContext:
        """Create a child context that observes this one.

        Args:
            timeout: Optional per-child timeout in seconds. The effective
                deadline is the earlier of this and the parent's.
        """
        child = RunContext(timeout=timeout, _parent=self)
        with self._lock:
            already_cancelled = self._event.is_set()
            if not already_cancelled:
                self._children.add(child)
        if already_cancelled:
            child.cancel(self._cause)
        return child

    def close(self) -> None:
        """Detach from the parent so it stops tracking this context."""
        parent = self._parent
        if parent is None:
            return
        with parent._lock:
            parent._children.discard(self)

    def __enter__(self) -> RunContext:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
