"""Middleware package for the security pipeline."""

from reqshield.app.middleware.security import SecurityPipelineMiddleware

__all__ = [
    "SecurityPipelineMiddleware",
]
