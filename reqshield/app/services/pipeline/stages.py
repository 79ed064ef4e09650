"""Pipeline stages.

Each stage inspects the shared PipelineContext and returns a StageOutcome.
A stage rejects either by returning a terminal outcome or by raising a
ShieldException; the dispatcher turns either into exactly one response.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from reqshield.app.core.logging import get_logger, log_security_event
from reqshield.app.core.security import build_security_headers, is_secure_request
from reqshield.app.exceptions import (
    CsrfValidationError,
    InsecureTransportError,
    RateLimitExceededError,
    StoreUnavailableError,
    ThreatDetectedError,
)
from reqshield.app.services.csrf import SAFE_METHODS, CsrfFailure, CsrfGuard, extract_token
from reqshield.app.services.pipeline.models import (
    PipelineContext,
    StageOutcome,
    TerminalResponse,
)
from reqshield.app.services.rate_limit import RateLimiter
from reqshield.app.services.threat_scanner import ThreatCategory, ThreatScanner

logger = get_logger(__name__)


class Stage(ABC):
    """One step of the security pipeline.

    ``critical`` stages fail closed: an unexpected error inside them
    rejects the request. Non-critical stages are logged and skipped.
    """

    name: str = "stage"
    critical: bool = True

    @abstractmethod
    async def process(self, ctx: PipelineContext) -> StageOutcome:
        """Inspect the request and decide whether it continues."""


class TransportStage(Stage):
    """Enforces HTTPS when configured.

    With a real hostname configured, plain-HTTP requests are redirected
    (301) to the HTTPS URL; otherwise they are refused with 403.
    """

    name = "transport"

    def __init__(
        self,
        https_only: bool = False,
        server_hostname: Optional[str] = None,
        https_port: int = 443,
        trust_forwarded: bool = True,
    ):
        self.https_only = https_only
        self.server_hostname = server_hostname
        self.https_port = https_port
        self.trust_forwarded = trust_forwarded

    def redirect_url(self, full_path: str) -> Optional[str]:
        if not self.server_hostname or self.server_hostname == "localhost":
            return None
        port = "" if self.https_port == 443 else f":{self.https_port}"
        return f"https://{self.server_hostname}{port}{full_path}"

    async def process(self, ctx: PipelineContext) -> StageOutcome:
        request = ctx.request
        ctx.secure = is_secure_request(request.scheme, request.headers, self.trust_forwarded)
        if not self.https_only or ctx.secure:
            return StageOutcome.proceed()

        log_security_event(
            logger,
            logging.WARNING,
            "SECURITY_HTTPS_REQUIRED",
            "HTTPS required",
            client_id=ctx.client_identity,
            path=request.path,
            method=request.method,
        )
        location = self.redirect_url(request.full_path)
        if location:
            return StageOutcome.terminal(TerminalResponse.redirect(location))
        raise InsecureTransportError()


class RateLimitStage(Stage):
    """Admits or rejects the request against the client's window."""

    name = "rate_limit"

    def __init__(self, limiter: RateLimiter):
        self.limiter = limiter

    async def process(self, ctx: PipelineContext) -> StageOutcome:
        result = await self.limiter.admit(ctx.client_identity)
        ctx.rate_limit = result

        if result.allowed:
            ctx.response_headers.update(result.headers())
            return StageOutcome.proceed()

        if result.degraded:
            return StageOutcome.terminal(
                TerminalResponse.from_exception(
                    StoreUnavailableError(),
                    headers={"Retry-After": str(result.retry_after)},
                )
            )

        exc = RateLimitExceededError(
            retry_after=result.retry_after,
            limit=result.limit,
            reset_at=result.reset_at,
        )
        return StageOutcome.terminal(
            TerminalResponse.from_exception(exc, headers=exc.headers())
        )


class CsrfStage(Stage):
    """Requires a valid anti-forgery token on mutating requests."""

    name = "csrf"

    def __init__(
        self,
        guard: CsrfGuard,
        excluded_path_prefixes: Iterable[str] = (),
        header_name: str = "x-csrf-token",
        field_name: str = "_csrf",
    ):
        self.guard = guard
        self.excluded_path_prefixes = tuple(excluded_path_prefixes)
        self.header_name = header_name
        self.field_name = field_name

    def is_excluded(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.excluded_path_prefixes)

    async def process(self, ctx: PipelineContext) -> StageOutcome:
        request = ctx.request
        if request.method in SAFE_METHODS:
            return StageOutcome.proceed()
        if self.is_excluded(request.path):
            logger.debug(f"CSRF check skipped for excluded path {request.path}")
            return StageOutcome.proceed()

        body = request.form if request.form is not None else request.body
        token = extract_token(
            request.headers,
            body=body,
            query=request.query,
            header_name=self.header_name,
            field_name=self.field_name,
        )
        validation = await self.guard.validate(token, request.session_id, request.method)
        ctx.csrf = validation
        if validation.valid:
            return StageOutcome.proceed()

        if validation.reason == CsrfFailure.STORE_UNAVAILABLE:
            raise StoreUnavailableError()
        raise CsrfValidationError(validation.reason.value)


class ThreatScanStage(Stage):
    """Scans every query, form and body field for injection attempts.

    Findings are recorded on the context; they only reject the request
    when blocking is enabled.
    """

    name = "threat_scan"
    critical = False

    def __init__(
        self,
        scanner: ThreatScanner,
        categories: Optional[Iterable[str]] = None,
        block: bool = False,
    ):
        self.scanner = scanner
        self.categories: List[ThreatCategory] = scanner.resolve_categories(categories)
        self.block = block

    async def process(self, ctx: PipelineContext) -> StageOutcome:
        request = ctx.request
        sources = (
            ("query", request.query),
            ("form", request.form),
            ("body", request.body),
        )
        for source, data in sources:
            if data:
                ctx.findings.extend(self.scanner.scan_fields(data, self.categories, source))

        if ctx.findings and self.block:
            first = ctx.findings[0]
            raise ThreatDetectedError(first.category.value, first.matched_pattern, first.field)
        return StageOutcome.proceed()


class SanitizeStage(Stage):
    """HTML-escapes every string in the form, query and body inputs.

    A failure is logged and the request continues with whatever sources
    were sanitized before it.
    """

    name = "sanitize"
    critical = False

    def __init__(self, scanner: ThreatScanner):
        self.scanner = scanner

    async def process(self, ctx: PipelineContext) -> StageOutcome:
        request = ctx.request
        try:
            if request.form is not None:
                ctx.sanitized_form = self.scanner.sanitize_value(request.form)
            if request.query:
                ctx.sanitized_query = self.scanner.sanitize_value(request.query)
            if request.body is not None:
                ctx.sanitized_body = self.scanner.sanitize_value(request.body)
            logger.debug("Inputs sanitized", extra={"code": "SECURITY_SANITIZED", "path": request.path})
        except Exception as e:
            log_security_event(
                logger,
                logging.ERROR,
                "SECURITY_SANITIZE_ERROR",
                f"Failed to sanitize inputs: {e}",
                path=request.path,
            )
        return StageOutcome.proceed()


class SecurityHeadersStage(Stage):
    """Adds the static hardening headers to the eventual response."""

    name = "security_headers"
    critical = False

    def __init__(self, hsts: bool = True):
        self.hsts = hsts

    async def process(self, ctx: PipelineContext) -> StageOutcome:
        ctx.response_headers.update(build_security_headers(ctx.secure, self.hsts))
        return StageOutcome.proceed()
