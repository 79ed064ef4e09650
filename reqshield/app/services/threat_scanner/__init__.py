"""Threat scanner - pattern-based injection detection."""
from reqshield.app.services.threat_scanner.models import ScanResult, ThreatFinding
from reqshield.app.services.threat_scanner.patterns import (
    ALL_CATEGORIES,
    CATEGORY_ORDER,
    SIGNATURES,
    ThreatCategory,
    ThreatSignature,
)
from reqshield.app.services.threat_scanner.service import ThreatScanner

__all__ = [
    "ALL_CATEGORIES",
    "CATEGORY_ORDER",
    "SIGNATURES",
    "ScanResult",
    "ThreatCategory",
    "ThreatFinding",
    "ThreatScanner",
    "ThreatSignature",
]
