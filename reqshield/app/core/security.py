from typing import Dict, Mapping, MutableMapping

# Static response hardening applied to every request that reaches the app
SECURITY_HEADERS: Dict[str, str] = {
    "X-XSS-Protection": "1; mode=block",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'self'",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}

HSTS_HEADER = "Strict-Transport-Security"
HSTS_VALUE = "max-age=31536000; includeSubDomains"

# Headers that leak implementation details
REMOVED_HEADERS = ("x-powered-by", "server")


def build_security_headers(secure: bool, hsts: bool = True) -> Dict[str, str]:
    """Return the headers to add to a response.

    HSTS is only meaningful over HTTPS, so it is added for secure
    requests only.

    Args:
        secure: Whether the request arrived over HTTPS
        hsts: Whether HSTS is enabled

    Returns:
        Header name to value mapping
    """
    headers = dict(SECURITY_HEADERS)
    if secure and hsts:
        headers[HSTS_HEADER] = HSTS_VALUE
    return headers


def strip_server_headers(headers: MutableMapping[str, str]) -> None:
    """Remove headers that advertise the server stack."""
    for name in REMOVED_HEADERS:
        if name in headers:
            del headers[name]


def is_secure_request(
    scheme: str,
    headers: Mapping[str, str],
    trust_forwarded: bool = True,
) -> bool:
    """Check if a request arrived over HTTPS.

    Args:
        scheme: URL scheme seen by the server
        headers: Request headers with lower-cased names
        trust_forwarded: Honour X-Forwarded-Proto from a proxy

    Returns:
        True for a direct TLS connection or a proxied HTTPS one
    """
    if scheme.lower() in ("https", "wss"):
        return True
    if trust_forwarded:
        proto = headers.get("x-forwarded-proto", "")
        return proto.split(",")[0].strip().lower() == "https"
    return False
