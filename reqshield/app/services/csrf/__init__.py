"""CSRF protection: token issuing, validation and expiry."""

from reqshield.app.services.csrf.guard import SAFE_METHODS, CsrfGuard, extract_token
from reqshield.app.services.csrf.models import CsrfFailure, CsrfToken, CsrfValidation

__all__ = [
    "SAFE_METHODS",
    "CsrfFailure",
    "CsrfGuard",
    "CsrfToken",
    "CsrfValidation",
    "extract_token",
]
