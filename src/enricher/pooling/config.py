# src/enricher/pooling/config.py
"""Worker pool configuration."""

from __future__ import annotations

from enum import StrEnum
from typing import Self

from pydantic import BaseModel, Field, model_validator


class FailurePolicy(StrEnum):
    """What a terminal per-item failure does to the rest of the run."""

    PARTIAL_OUTPUT = "partial_output"
    FAIL_FAST = "fail_fast"


class PoolConfig(BaseModel):
    """Worker pool options.

    Attributes:
        workers: Number of concurrent workers (must be >= 1)
        max_retries: Extra attempts per item for retryable errors
        request_timeout_seconds: Per-attempt deadline
        rate_limit_rps: Global admission rate; <= 0 disables limiting
        failure_policy: partial_output records failures per item,
            fail_fast cancels the run on the first one
        backoff_initial_ms: Delay before the first retry
        backoff_max_ms: Ceiling on the exponential delay
        backoff_jitter_frac: Uniform jitter applied as +/- this fraction
    """

    model_config = {"extra": "forbid", "frozen": True}

    workers: int = Field(10, ge=1, description="Number of concurrent workers")
    max_retries: int = Field(0, ge=0, description="Extra attempts for retryable errors")
    request_timeout_seconds: float = Field(30.0, gt=0, description="Per-attempt timeout in seconds")
    rate_limit_rps: float = Field(0.0, description="Global requests per second (<= 0 disables)")
    failure_policy: FailurePolicy = Field(FailurePolicy.PARTIAL_OUTPUT, description="Terminal failure handling")
    backoff_initial_ms: int = Field(200, gt=0, description="Initial backoff in milliseconds")
    backoff_max_ms: int = Field(2000, gt=0, description="Maximum backoff in milliseconds")
    backoff_jitter_frac: float = Field(0.2, ge=0.0, lt=1.0, description="Backoff jitter fraction")

    @model_validator(mode="after")
    def _validate_backoff_invariants(self) -> Self:
        """Validate backoff_initial_ms <= backoff_max_ms."""
        if self.backoff_initial_ms > self.backoff_max_ms:
            raise ValueError(
                f"backoff_initial_ms ({self.backoff_initial_ms}) cannot exceed backoff_max_ms ({self.backoff_max_ms})"
            )
        return self

    @property
    def fail_fast(self) -> bool:
        return self.failure_policy is FailurePolicy.FAIL_FAST

    def backoff_seconds(self, attempt: int, jitter: float) -> float:
        """Delay before retry number attempt+1.

        Args:
            attempt: Zero-based index of the attempt that just failed
            jitter: Sample from U(-1, 1), scaled by backoff_jitter_frac

        Returns:
            min(initial * 2**attempt, max) * (1 + jitter * frac), in seconds
        """
        base_ms = min(self.backoff_initial_ms * (2**attempt), self.backoff_max_ms)
        return max(0.0, base_ms * (1 + jitter * self.backoff_jitter_frac)) / 1000
