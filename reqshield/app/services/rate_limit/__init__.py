"""Rate limiting for the security pipeline.

Sliding-window-by-pruning limiter with a block state, backed by any
StateStore implementation.
"""

from reqshield.app.services.rate_limit.limiter import RateLimiter
from reqshield.app.services.rate_limit.models import (
    RateLimitResult,
    RateLimitStatus,
    RateWindow,
)

__all__ = [
    "RateLimiter",
    "RateLimitResult",
    "RateLimitStatus",
    "RateWindow",
]
