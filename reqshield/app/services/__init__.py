"""Services package for the security pipeline.

This package provides:
- Injection detection and sanitization (threat_scanner)
- Per-client rate limiting (rate_limit)
- CSRF token management (csrf)
- The pipeline that orders them (pipeline)
- Background cleanup of expired state (sweeper)
"""

from reqshield.app.services.csrf import CsrfGuard, CsrfValidation
from reqshield.app.services.identity import resolve_client_identity
from reqshield.app.services.rate_limit import RateLimiter, RateLimitResult
from reqshield.app.services.threat_scanner import ScanResult, ThreatCategory, ThreatScanner

__all__ = [
    "CsrfGuard",
    "CsrfValidation",
    "RateLimiter",
    "RateLimitResult",
    "ScanResult",
    "ThreatCategory",
    "ThreatScanner",
    "resolve_client_identity",
]
