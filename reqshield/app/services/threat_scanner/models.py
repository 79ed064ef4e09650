"""Threat scanner models."""
from dataclasses import dataclass
from typing import Optional

from reqshield.app.services.threat_scanner.patterns import ThreatCategory


@dataclass(frozen=True)
class ScanResult:
    """Outcome of scanning one value."""
    safe: bool
    category: Optional[ThreatCategory] = None
    matched_pattern: Optional[str] = None

    @classmethod
    def clean(cls) -> "ScanResult":
        return cls(safe=True)


@dataclass(frozen=True)
class ThreatFinding:
    """A detection tied to the request field it was found in."""
    field: str
    category: ThreatCategory
    matched_pattern: str
