# src/enricher/contracts/errors.py
"""Error taxonomy for enrichment runs.

Four families of failure are distinguished:
- Configuration errors: missing or invalid settings, reported before any work
- Per-item errors: classified retryable or terminal by the retry classifier
- Platform I/O errors: see enricher.platform.errors
- Consistency errors: internal logic defects, always fatal
"""

from __future__ import annotations


class EnricherError(Exception):
    """Base exception for all enricher errors."""


class ConfigurationError(EnricherError):
    """Required settings are missing or invalid."""


class ConsistencyError(EnricherError):
    """Internal invariant violated (e.g. result count mismatch).

    Indicates a logic defect rather than an external condition.
    Never caught and converted into a row-level error.
    """


class EmptyIdentifierError(EnricherError):
    """Identifier was empty after trimming. Terminal, never retried."""

    def __init__(self) -> None:
        super().__init__("empty email")


class RetryableError(EnricherError):
    """Error tagged as safe to retry.

    Two variants:
    - Unconditional (max_extra_retries is None): the pool-wide retry
      budget applies.
    - Capped (max_extra_retries=N): the effective budget is
      min(N, pool default). Use RetryableError.capped() to build one.

    Attributes:
        max_extra_retries: Optional cap on extra attempts for this error
    """

    def __init__(self, message: str, *, max_extra_retries: int | None = None) -> None:
        if max_extra_retries is not None and max_extra_retries < 0:
            raise ValueError(f"max_extra_retries must be >= 0, got {max_extra_retries}")
        super().__init__(message)
        self.max_extra_retries = max_extra_retries

    @classmethod
    def capped(cls, max_extra_retries: int, message: str) -> RetryableError:
        """Build a retryable error that limits its own retry budget."""
        return cls(message, max_extra_retries=max_extra_retries)

    @property
    def is_capped(self) -> bool:
        return self.max_extra_retries is not None
