# tests/unit/pooling/test_errors.py
"""Tests for per-item retry classification."""

from __future__ import annotations

import errno

import httpx
import pytest

from enricher.contracts.errors import EmptyIdentifierError, RetryableError
from enricher.core.context import Cancelled, DeadlineExceeded
from enricher.pooling.errors import is_retryable, max_extra_retries, should_retry


def _wrapped(outer: Exception, inner: BaseException) -> Exception:
    try:
        raise outer from inner
    except Exception as e:
        return e


class TestIsRetryable:
    @pytest.mark.parametrize(
        "error",
        [
            RetryableError("rate limited"),
            RetryableError.capped(1, "cancelled upstream"),
            TimeoutError("read timed out"),
            DeadlineExceeded(),
            ConnectionResetError(errno.ECONNRESET, "reset"),
            ConnectionRefusedError(errno.ECONNREFUSED, "refused"),
            httpx.ReadTimeout("timed out"),
            httpx.ConnectError("connect failed"),
        ],
    )
    def test_transient_errors_are_retryable(self, error: BaseException) -> None:
        assert is_retryable(error)

    @pytest.mark.parametrize(
        "error",
        [
            ValueError("bad json"),
            EmptyIdentifierError(),
            KeyError("missing"),
            Cancelled(),
        ],
    )
    def test_other_errors_are_terminal(self, error: BaseException) -> None:
        assert not is_retryable(error)

    def test_tag_found_through_explicit_cause(self) -> None:
        error = _wrapped(RuntimeError("call failed"), RetryableError("server busy"))
        assert is_retryable(error)

    def test_implicit_context_is_not_followed(self) -> None:
        try:
            try:
                raise RetryableError("server busy")
            except RetryableError:
                raise ValueError("handler bug")  # noqa: B904
        except ValueError as e:
            error = e
        assert not is_retryable(error)

    def test_cancelled_is_terminal_even_with_transient_cause(self) -> None:
        error = _wrapped(Cancelled(), TimeoutError("slow"))
        assert not is_retryable(error)

    def test_cause_cycle_terminates(self) -> None:
        a = ValueError("a")
        b = ValueError("b")
        a.__cause__ = b
        b.__cause__ = a
        assert not is_retryable(a)


class TestMaxExtraRetries:
    def test_uncapped_uses_default(self) -> None:
        assert max_extra_retries(RetryableError("x"), 3) == 3

    def test_cap_below_default_wins(self) -> None:
        assert max_extra_retries(RetryableError.capped(1, "x"), 3) == 1

    def test_cap_never_raises_budget(self) -> None:
        assert max_extra_retries(RetryableError.capped(5, "x"), 2) == 2

    def test_negative_default_clamps_to_zero(self) -> None:
        assert max_extra_retries(TimeoutError(), -4) == 0

    def test_negative_cap_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            RetryableError.capped(-1, "x")


class TestShouldRetry:
    def test_retries_until_budget_spent(self) -> None:
        error = TimeoutError()
        assert [should_retry(error, attempt, 2) for attempt in range(4)] == [True, True, False, False]

    def test_capped_error_gets_one_retry(self) -> None:
        error = RetryableError.capped(1, "cancelled")
        assert should_retry(error, 0, 5)
        assert not should_retry(error, 1, 5)

    def test_terminal_error_never_retried(self) -> None:
        assert not should_retry(ValueError("x"), 0, 5)
