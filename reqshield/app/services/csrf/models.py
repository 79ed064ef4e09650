"""CSRF token models."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class CsrfFailure(str, Enum):
    """Machine-readable reasons a token is refused."""
    MISSING = "missing"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    SESSION_MISMATCH = "session_mismatch"
    ALREADY_USED = "already_used"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass
class CsrfToken:
    """Stored state of an issued token."""
    session_id: Optional[str]
    created_at: float
    expires_at: float
    consumed: bool = False

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "consumed": self.consumed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CsrfToken":
        return cls(
            session_id=data.get("session_id"),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            consumed=bool(data.get("consumed", False)),
        )


@dataclass(frozen=True)
class CsrfValidation:
    """Result of validating a token for one request."""
    valid: bool
    reason: Optional[CsrfFailure] = None
    degraded: bool = False

    @classmethod
    def ok(cls) -> "CsrfValidation":
        return cls(valid=True)

    @classmethod
    def fail(cls, reason: CsrfFailure) -> "CsrfValidation":
        return cls(valid=False, reason=reason)
