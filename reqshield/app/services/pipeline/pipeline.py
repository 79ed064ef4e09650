"""Security pipeline dispatcher.

Stages run in a fixed order: transport, rate limit, CSRF, threat scan,
sanitize, security headers. The first terminal outcome ends the request;
otherwise the request is handed to the application.
"""

import logging
import time
from typing import Callable, Optional, Sequence

from reqshield.app.core.config import Settings, settings as default_settings
from reqshield.app.core.logging import get_logger, log_security_event
from reqshield.app.core.store import StateStore
from reqshield.app.exceptions import ShieldException
from reqshield.app.services.csrf import CsrfGuard
from reqshield.app.services.identity import resolve_client_identity
from reqshield.app.services.pipeline.models import (
    InboundRequest,
    PipelineContext,
    PipelineResult,
    TerminalResponse,
)
from reqshield.app.services.pipeline.stages import (
    CsrfStage,
    RateLimitStage,
    SanitizeStage,
    SecurityHeadersStage,
    Stage,
    ThreatScanStage,
    TransportStage,
)
from reqshield.app.services.rate_limit import RateLimiter
from reqshield.app.services.threat_scanner import ThreatScanner

logger = get_logger(__name__)


class SecurityPipeline:
    """Runs the configured stages against one request.

    Usage:
        pipeline = build_pipeline(settings, store)
        result = await pipeline.run(inbound)
        if not result.proceed:
            # send result.response
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        rate_limiter: Optional[RateLimiter] = None,
        csrf_guard: Optional[CsrfGuard] = None,
        scanner: Optional[ThreatScanner] = None,
        trust_forwarded: bool = True,
    ):
        self.stages = list(stages)
        self.rate_limiter = rate_limiter
        self.csrf_guard = csrf_guard
        self.scanner = scanner
        self.trust_forwarded = trust_forwarded

    def identify(self, request: InboundRequest) -> str:
        return resolve_client_identity(
            request.headers,
            client_host=request.client_host,
            session_id=request.session_id,
            trust_forwarded=self.trust_forwarded,
        )

    async def run(self, request: InboundRequest) -> PipelineResult:
        """Process a request through every stage.

        Returns:
            PipelineResult whose response is set when a stage rejected
        """
        ctx = PipelineContext(request=request, client_identity=self.identify(request))

        for stage in self.stages:
            try:
                outcome = await stage.process(ctx)
            except ShieldException as e:
                response = TerminalResponse.from_exception(e)
                self._log_rejection(ctx, stage, response)
                return PipelineResult(ctx, response)
            except Exception as e:
                if stage.critical:
                    logger.exception(f"Security stage '{stage.name}' failed, rejecting request")
                    return PipelineResult(ctx, TerminalResponse.from_exception(ShieldException()))
                logger.error(f"Security stage '{stage.name}' failed, continuing: {e}")
                continue

            if outcome.is_terminal:
                self._log_rejection(ctx, stage, outcome.response)
                return PipelineResult(ctx, outcome.response)

        return PipelineResult(ctx)

    @staticmethod
    def _log_rejection(ctx: PipelineContext, stage: Stage, response: TerminalResponse) -> None:
        log_security_event(
            logger,
            logging.INFO,
            "SECURITY_REQUEST_REJECTED",
            f"Request stopped by {stage.name} stage",
            client_id=ctx.client_identity,
            path=ctx.request.path,
            method=ctx.request.method,
            status_code=response.status_code,
        )


def build_pipeline(
    store: StateStore,
    config: Optional[Settings] = None,
    clock: Callable[[], float] = time.time,
) -> SecurityPipeline:
    """Assemble the pipeline described by configuration.

    Args:
        store: State store shared by the rate limiter and CSRF guard
        config: Settings to use (default: the global settings)
        clock: Time source for the limiter and guard

    Returns:
        A new SecurityPipeline; the caller owns the store's lifetime
    """
    config = config or default_settings

    scanner = ThreatScanner()
    limiter = RateLimiter(
        store,
        max_requests=config.max_requests_per_window,
        window_seconds=config.window_seconds,
        fail_closed=config.rate_limit_fail_closed,
        clock=clock,
    )
    guard = CsrfGuard(
        store,
        ttl_seconds=config.csrf_token_ttl_seconds,
        one_time_use=config.csrf_one_time_use,
        token_bytes=config.csrf_token_bytes,
        fail_closed=config.csrf_fail_closed,
        clock=clock,
    )

    stages: list[Stage] = [
        TransportStage(
            https_only=config.https_only,
            server_hostname=config.server_hostname,
            https_port=config.https_port,
            trust_forwarded=config.trust_forwarded_headers,
        ),
        RateLimitStage(limiter),
    ]
    if config.csrf_enabled:
        stages.append(
            CsrfStage(
                guard,
                excluded_path_prefixes=config.csrf_excluded_path_prefixes,
                header_name=config.csrf_header_name,
                field_name=config.csrf_field_name,
            )
        )
    if config.scan_inputs:
        stages.append(
            ThreatScanStage(
                scanner,
                categories=config.scan_categories,
                block=config.block_detected_threats,
            )
        )
    if config.sanitize_inputs:
        stages.append(SanitizeStage(scanner))
    if config.security_headers_enabled:
        stages.append(SecurityHeadersStage(hsts=config.hsts_enabled))

    logger.info(
        "Security pipeline built",
        extra={"stages": [stage.name for stage in stages]},
    )
    return SecurityPipeline(
        stages,
        rate_limiter=limiter,
        csrf_guard=guard,
        scanner=scanner,
        trust_forwarded=config.trust_forwarded_headers,
    )
