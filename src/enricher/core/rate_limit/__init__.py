"""Rate limiting for outbound enrichment calls.

Uses pyrate-limiter with an in-memory bucket.
"""

from enricher.core.rate_limit.limiter import NoOpLimiter, RateLimiter, create_limiter

__all__ = ["NoOpLimiter", "RateLimiter", "create_limiter"]
