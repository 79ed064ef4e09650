import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


THREAT_CATEGORY_NAMES = ("sql", "nosql", "command", "path_traversal", "ldap")


def _parse_string_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but accept a plain comma/space separated list so a
    # hand-edited .env does not crash startup.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    parts = [p for p in re.split(r"[,\s]+", raw) if p]

    # Deduplicate while preserving order.
    seen: set[str] = set()
    result: list[str] = []
    for part in parts:
        if part in seen:
            continue
        seen.add(part)
        result.append(part)
    return result


class Settings(BaseSettings):
    """Security pipeline settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Rate limiting
    window_duration_ms: int = 60_000
    max_requests_per_window: int = 100
    rate_limit_fail_closed: bool = True  # Reject when the store is unreachable

    # CSRF protection
    csrf_enabled: bool = True
    csrf_token_ttl_ms: int = 3_600_000  # 1 hour
    csrf_one_time_use: bool = False
    csrf_token_bytes: int = 32
    csrf_header_name: str = "x-csrf-token"
    csrf_field_name: str = "_csrf"
    csrf_fail_closed: bool = True
    # Use NoDecode so "/api/webhook,/health" works as well as a JSON list.
    csrf_excluded_path_prefixes: Annotated[list[str], NoDecode] = ["/api/webhook"]

    # Transport enforcement
    https_only: bool = False
    server_hostname: str | None = None
    https_port: int = 443
    trust_forwarded_headers: bool = True  # Honour X-Forwarded-Proto / -For

    # Input handling
    sanitize_inputs: bool = True
    scan_inputs: bool = True
    block_detected_threats: bool = False
    scan_categories: Annotated[list[str], NoDecode] = list(THREAT_CATEGORY_NAMES)

    # Response headers
    security_headers_enabled: bool = True
    hsts_enabled: bool = True

    # Sessions
    session_cookie_name: str = "session_id"

    # Background sweep of expired tokens and idle rate windows
    sweep_interval_seconds: float = 60.0

    # Store backend
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    store_prefix: str = "reqshield:"

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json
    log_async: bool = True

    @field_validator("csrf_excluded_path_prefixes", mode="before")
    @classmethod
    def decode_excluded_prefixes(cls, v: Any) -> list[str]:
        return _parse_string_list(v)

    @field_validator("scan_categories", mode="before")
    @classmethod
    def decode_scan_categories(cls, v: Any) -> list[str]:
        categories = [c.lower() for c in _parse_string_list(v)]
        unknown = [c for c in categories if c not in THREAT_CATEGORY_NAMES]
        if unknown:
            raise ValueError(f"Unknown threat categories: {', '.join(unknown)}")
        return categories

    @field_validator(
        "window_duration_ms",
        "max_requests_per_window",
        "csrf_token_ttl_ms",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate window, budget and TTL values are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("csrf_token_bytes")
    @classmethod
    def validate_token_entropy(cls, v: int) -> int:
        """Refuse tokens shorter than 128 bits."""
        if v < 16:
            raise ValueError("csrf_token_bytes must be at least 16")
        return v

    @field_validator("sweep_interval_seconds")
    @classmethod
    def validate_sweep_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        return v

    @field_validator("https_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("https_port must be a valid TCP port")
        return v

    @property
    def window_seconds(self) -> float:
        return self.window_duration_ms / 1000

    @property
    def csrf_token_ttl_seconds(self) -> float:
        return self.csrf_token_ttl_ms / 1000

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
