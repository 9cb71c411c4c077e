# src/enricher/pooling/errors.py
"""Retry classification for per-item failures.

An error is retryable when it is explicitly tagged (RetryableError) or is a
recognised transient condition: a timeout, an expired deadline, or a
connection reset/refused. Everything else fails the item immediately.

Capped RetryableErrors limit their own budget below the pool default, e.g.
an upstream "request cancelled" that is worth exactly one more try.
"""

from __future__ import annotations

from collections.abc import Iterator

import httpx

from enricher.contracts.errors import RetryableError
from enricher.core.context import Cancelled

# Transient conditions retried without an explicit tag.
# TimeoutError covers DeadlineExceeded and socket timeouts.
TRANSIENT_ERROR_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionResetError,
    ConnectionRefusedError,
    httpx.TimeoutException,
    httpx.NetworkError,
)


def _error_chain(err: BaseException) -> Iterator[BaseException]:
    """Yield err and its explicit causes (raise ... from ...), guarding against cycles."""
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def _find_retryable_tag(err: BaseException) -> RetryableError | None:
    for link in _error_chain(err):
        if isinstance(link, RetryableError):
            return link
    return None


def is_retryable(err: BaseException) -> bool:
    """Check whether err may succeed on a later attempt.

    Args:
        err: Exception raised by one attempt

    Returns:
        True for tagged or transient errors; False otherwise,
        and always False for cancellation.
    """
    if isinstance(err, Cancelled):
        return False
    for link in _error_chain(err):
        if isinstance(link, (RetryableError, *TRANSIENT_ERROR_TYPES)):
            return True
    return False


def max_extra_retries(err: BaseException, default: int) -> int:
    """Effective extra-attempt budget for err.

    Args:
        err: Exception raised by one attempt
        default: Pool-wide max_retries

    Returns:
        min(cap, default) for a capped RetryableError, else default.
        Never negative.
    """
    default = max(0, default)
    tag = _find_retryable_tag(err)
    if tag is not None and tag.max_extra_retries is not None:
        return min(max(0, tag.max_extra_retries), default)
    return default


def should_retry(err: BaseException, attempt: int, default: int) -> bool:
    """Whether a failure on zero-based attempt warrants another try."""
    return is_retryable(err) and attempt < max_extra_retries(err, default)
