# src/enricher/pooling/__init__.py
"""Bounded-concurrency worker pool with retry classification."""

from enricher.pooling.config import FailurePolicy, PoolConfig
from enricher.pooling.errors import is_retryable, max_extra_retries, should_retry
from enricher.pooling.executor import PoolStats, WorkerPool, WorkItem

__all__ = [
    "FailurePolicy",
    "PoolConfig",
    "PoolStats",
    "WorkItem",
    "WorkerPool",
    "is_retryable",
    "max_extra_retries",
    "should_retry",
]
