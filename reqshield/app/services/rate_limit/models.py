"""Rate limiting data models.

This module contains dataclasses for rate limit state and results.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    ``degraded`` marks a decision made by the store-failure policy rather
    than by counting requests.
    """
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: Optional[int] = None
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class RateWindow:
    """Per-identity sliding window state."""
    timestamps: List[float] = field(default_factory=list)
    blocked: bool = False
    block_expiry: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamps": list(self.timestamps),
            "blocked": self.blocked,
            "block_expiry": self.block_expiry,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateWindow":
        return cls(
            timestamps=[float(t) for t in data.get("timestamps", [])],
            blocked=bool(data.get("blocked", False)),
            block_expiry=float(data.get("block_expiry", 0.0)),
        )


@dataclass
class RateLimitStatus:
    """Read-only view of an identity's window."""
    requests: int
    remaining: int
    blocked: bool
    block_expiry: Optional[float] = None
