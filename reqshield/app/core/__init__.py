"""Core utilities for the security pipeline."""

from reqshield.app.core.config import settings
from reqshield.app.core.logging import get_logger, log_security_event, setup_logging
from reqshield.app.core.store import (
    InMemoryStore,
    RedisStore,
    StateStore,
    create_store,
)

__all__ = [
    "InMemoryStore",
    "RedisStore",
    "StateStore",
    "create_store",
    "settings",
    "get_logger",
    "log_security_event",
    "setup_logging",
]
