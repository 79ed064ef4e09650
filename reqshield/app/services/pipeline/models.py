"""Security pipeline data models.

This module contains dataclasses for the request view the pipeline
inspects, the per-request context stages share, and the tagged outcome
each stage returns.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from reqshield.app.exceptions import ShieldException
from reqshield.app.services.csrf import CsrfValidation
from reqshield.app.services.rate_limit import RateLimitResult
from reqshield.app.services.threat_scanner import ThreatFinding


@dataclass
class InboundRequest:
    """Framework-independent view of an HTTP request."""
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    form: Optional[Dict[str, Any]] = None
    body: Any = None
    session_id: Optional[str] = None
    client_host: Optional[str] = None
    scheme: str = "http"
    query_string: str = ""

    def __post_init__(self):
        self.method = self.method.upper()
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    @property
    def full_path(self) -> str:
        """Path plus query string, as used for redirects."""
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path


@dataclass
class TerminalResponse:
    """A response that ends the request before it reaches the app."""
    status_code: int
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_exception(
        cls, exc: ShieldException, headers: Optional[Dict[str, str]] = None
    ) -> "TerminalResponse":
        return cls(
            status_code=exc.status_code,
            body=exc.to_response(),
            headers=dict(headers or {}),
        )

    @classmethod
    def redirect(cls, location: str) -> "TerminalResponse":
        return cls(status_code=301, headers={"Location": location})


@dataclass(frozen=True)
class StageOutcome:
    """Either continue to the next stage or stop with a response."""
    response: Optional[TerminalResponse] = None

    @property
    def is_terminal(self) -> bool:
        return self.response is not None

    @classmethod
    def proceed(cls) -> "StageOutcome":
        return cls()

    @classmethod
    def terminal(cls, response: TerminalResponse) -> "StageOutcome":
        return cls(response=response)


@dataclass
class PipelineContext:
    """State shared by the stages while one request is processed.

    The sanitized_* fields start as the raw inputs and are replaced by
    the sanitize stage, source by source.
    """
    request: InboundRequest
    client_identity: str
    secure: bool = False
    rate_limit: Optional[RateLimitResult] = None
    csrf: Optional[CsrfValidation] = None
    findings: List[ThreatFinding] = field(default_factory=list)
    sanitized_query: Dict[str, Any] = field(default_factory=dict)
    sanitized_form: Optional[Dict[str, Any]] = None
    sanitized_body: Any = None
    response_headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.sanitized_query = dict(self.request.query)
        self.sanitized_form = self.request.form
        self.sanitized_body = self.request.body


@dataclass
class PipelineResult:
    """Outcome of running the whole pipeline on one request."""
    context: PipelineContext
    response: Optional[TerminalResponse] = None

    @property
    def proceed(self) -> bool:
        return self.response is None
