"""Custom exceptions for the security pipeline."""

from typing import Any, Dict, Optional


class ShieldException(Exception):
    """Base class for pipeline exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their
    specific status_code and machine-readable code so that a rejecting
    stage can turn any of them into exactly one JSON response.
    """
    status_code: int = 500
    code: str = "security_error"

    def __init__(self, message: str = "Security pipeline error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        """Convert to the JSON body of a terminal response."""
        return {"error": self.code, "message": self.message}


class RateLimitExceededError(ShieldException):
    """Raised when a client exceeds its request budget.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    code = "rate_limit_exceeded"

    def __init__(self, retry_after: int, limit: int, reset_at: int):
        self.retry_after = retry_after
        self.limit = limit
        self.reset_at = reset_at
        super().__init__("Rate limit exceeded. Please try again later.")

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        body["retry_after"] = self.retry_after
        return body

    def headers(self) -> Dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_at),
        }


class CsrfValidationError(ShieldException):
    """Raised when a mutating request carries no valid anti-forgery token.

    Maps to HTTP 403 Forbidden. ``reason`` is one of missing, not_found,
    expired, session_mismatch, already_used or store_unavailable.
    """
    status_code = 403
    code = "csrf_invalid"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"CSRF validation failed: {reason}")

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        body["reason"] = self.reason
        return body


class InsecureTransportError(ShieldException):
    """Raised when HTTPS is required and no redirect target is configured.

    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    code = "https_required"

    def __init__(self, detail: str = "HTTPS is required for this endpoint"):
        super().__init__(detail)


class ThreatDetectedError(ShieldException):
    """Raised when an input field matches an injection signature.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    code = "threat_detected"

    def __init__(self, category: str, pattern: str, field: Optional[str] = None):
        self.category = category
        self.pattern = pattern
        self.field = field
        super().__init__("Request input rejected by security policy")

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        body["category"] = self.category
        if self.field:
            body["field"] = self.field
        return body


class PathTraversalError(ShieldException):
    """Raised when a file path escapes its allowed base directory.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    code = "path_traversal"

    def __init__(self, path: str, detail: str = "Path traversal attempt"):
        self.path = path
        super().__init__(detail)


class StoreUnavailableError(ShieldException):
    """Raised when the state store cannot be consulted.

    Maps to HTTP 503 Service Unavailable when a fail-closed stage hits it.
    """
    status_code = 503
    code = "store_unavailable"

    def __init__(self, detail: str = "Security state store unavailable"):
        super().__init__(detail)


class TokenCollisionError(ShieldException):
    """Raised when a freshly generated token already exists in the store.

    Maps to HTTP 500 Internal Server Error.
    """
    status_code = 500
    code = "token_collision"

    def __init__(self):
        super().__init__("Generated CSRF token collided with an existing token")
