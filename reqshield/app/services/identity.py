"""Client identity resolution.

The same logical client must always land in the same rate-limit bucket,
so resolution is a fixed priority: session id, then API key, then IP.
"""

import hashlib
from typing import Mapping, Optional


def hash_api_key(raw_key: str) -> str:
    """Hash an API key so raw secrets never become store keys.

    Uses 32 hex chars (128 bits) for collision resistance.
    """
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()[:32]


def get_client_ip(
    headers: Mapping[str, str],
    client_host: Optional[str],
    trust_forwarded: bool = True,
) -> str:
    """Return the caller's address.

    Behind a proxy the first X-Forwarded-For entry wins, then X-Real-IP;
    otherwise the direct peer address.
    """
    if trust_forwarded:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return client_host or "unknown"


def resolve_client_identity(
    headers: Mapping[str, str],
    client_host: Optional[str] = None,
    session_id: Optional[str] = None,
    trust_forwarded: bool = True,
) -> str:
    """Derive the partition key for a request.

    Args:
        headers: Request headers with lower-cased names
        client_host: Direct connection address
        session_id: Session identifier, if the request carries one
        trust_forwarded: Whether proxy headers are honoured

    Returns:
        ``session:<id>``, ``api:<hash>`` or ``ip:<address>``
    """
    if session_id:
        return f"session:{session_id}"

    api_key = (headers.get("x-api-key") or "").strip()
    if api_key:
        return f"api:{hash_api_key(api_key)}"

    return f"ip:{get_client_ip(headers, client_host, trust_forwarded)}"
