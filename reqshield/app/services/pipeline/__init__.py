"""Security pipeline: ordered stages run by a single dispatcher."""

from reqshield.app.services.pipeline.models import (
    InboundRequest,
    PipelineContext,
    PipelineResult,
    StageOutcome,
    TerminalResponse,
)
from reqshield.app.services.pipeline.pipeline import SecurityPipeline, build_pipeline
from reqshield.app.services.pipeline.stages import (
    CsrfStage,
    RateLimitStage,
    SanitizeStage,
    SecurityHeadersStage,
    Stage,
    ThreatScanStage,
    TransportStage,
)

__all__ = [
    "CsrfStage",
    "InboundRequest",
    "PipelineContext",
    "PipelineResult",
    "RateLimitStage",
    "SanitizeStage",
    "SecurityHeadersStage",
    "SecurityPipeline",
    "Stage",
    "StageOutcome",
    "TerminalResponse",
    "ThreatScanStage",
    "TransportStage",
    "build_pipeline",
]
