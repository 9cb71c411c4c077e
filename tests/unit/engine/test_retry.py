# tests/unit/engine/test_retry.py
"""Tests for RetryManager."""

from __future__ import annotations

import pytest

from enricher.core.context import Cancelled, RunContext
from enricher.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from enricher.platform.errors import PlatformHTTPError, is_transient

FAST = RetryConfig(max_attempts=4, base_delay=0.001, max_delay=0.002)


class Flaky:
    """Fails with the given errors in order, then returns "done"."""

    def __init__(self, *errors: BaseException) -> None:
        self._errors = list(errors)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return "done"


class TestRetryConfig:
    def test_defaults(self) -> None:
        config = RetryConfig()
        assert config.max_attempts == 8
        assert config.base_delay == 0.2
        assert config.max_delay == 2.0

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError, match="max_attempts"):
            RetryConfig(max_attempts=0)

    def test_no_retry_factory(self) -> None:
        assert RetryConfig.no_retry().max_attempts == 1


class TestRetryManager:
    def test_success_on_first_try(self) -> None:
        manager = RetryManager(FAST, is_retryable=is_transient)
        fn = Flaky()
        assert manager.call("op", fn) == "done"
        assert fn.calls == 1

    def test_retries_transient_then_succeeds(self) -> None:
        manager = RetryManager(FAST, is_retryable=is_transient)
        fn = Flaky(PlatformHTTPError("readTable", 503), PlatformHTTPError("readTable", 429))
        assert manager.call("readTable", fn) == "done"
        assert fn.calls == 3

    def test_non_transient_error_propagates_unchanged(self) -> None:
        manager = RetryManager(FAST, is_retryable=is_transient)
        error = PlatformHTTPError("readTable", 403)
        fn = Flaky(error)
        with pytest.raises(PlatformHTTPError) as exc_info:
            manager.call("readTable", fn)
        assert exc_info.value is error
        assert fn.calls == 1

    def test_exhaustion_raises_max_retries_exceeded(self) -> None:
        manager = RetryManager(FAST, is_retryable=is_transient)
        fn = Flaky(*(PlatformHTTPError("uploadFile", 502) for _ in range(10)))
        with pytest.raises(MaxRetriesExceeded) as exc_info:
            manager.call("uploadFile", fn)

        assert fn.calls == 4
        assert exc_info.value.operation == "uploadFile"
        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.last_error, PlatformHTTPError)
        assert "uploadFile: max retries (4) exceeded" in str(exc_info.value)

    def test_cancelled_context_stops_before_first_attempt(self) -> None:
        manager = RetryManager(FAST, is_retryable=is_transient)
        ctx = RunContext()
        ctx.cancel()
        fn = Flaky()
        with pytest.raises(Cancelled):
            manager.call("op", fn, ctx=ctx)
        assert fn.calls == 0

    def test_cancel_during_backoff_ends_retries(self) -> None:
        ctx = RunContext()
        manager = RetryManager(RetryConfig(max_attempts=5, base_delay=10.0, max_delay=10.0), is_retryable=is_transient)

        def fail_and_cancel() -> str:
            ctx.cancel()
            raise PlatformHTTPError("op", 500)

        with pytest.raises(Cancelled):
            manager.call("op", fail_and_cancel, ctx=ctx)
