"""Anti-forgery token issuing and validation.

Token lifecycle: ISSUED -> (VALID | EXPIRED | CONSUMED) -> absent.
Expired tokens are purged when they are presented and by the sweep;
consumed one-time tokens stay in the store until they expire so a replay
reports already_used rather than not_found.
"""

import logging
import secrets
import time
from dataclasses import replace
from typing import Any, Callable, Mapping, Optional

from reqshield.app.core.logging import get_logger, log_security_event
from reqshield.app.core.store import StateStore
from reqshield.app.exceptions import StoreUnavailableError, TokenCollisionError
from reqshield.app.services.csrf.models import CsrfFailure, CsrfToken, CsrfValidation

logger = get_logger(__name__)

# Read-only methods never need a token
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


def extract_token(
    headers: Mapping[str, str],
    body: Any = None,
    query: Optional[Mapping[str, Any]] = None,
    header_name: str = "x-csrf-token",
    field_name: str = "_csrf",
) -> Optional[str]:
    """Find the token a request presents.

    Precedence: header, then body field, then query parameter. The first
    non-empty value wins.
    """
    token = headers.get(header_name.lower())
    if token:
        return token
    if isinstance(body, Mapping):
        value = body.get(field_name)
        if isinstance(value, str) and value:
            return value
    if query:
        value = query.get(field_name)
        if isinstance(value, str) and value:
            return value
    return None


class CsrfGuard:
    """Issues, validates and expires CSRF tokens.

    In one-time-use mode the check that a token is unconsumed and the act
    of consuming it are one compare-and-update, so two concurrent
    validations of the same token can never both succeed.
    """

    KEY_PREFIX = "csrf:token:"
    MAX_UPDATE_ATTEMPTS = 50

    def __init__(
        self,
        store: StateStore,
        ttl_seconds: float = 3600.0,
        one_time_use: bool = False,
        token_bytes: int = 32,
        fail_closed: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the guard.

        Args:
            store: Backing state store
            ttl_seconds: Token lifetime
            one_time_use: Tokens validate at most once
            token_bytes: Random bytes per token (hex encoded)
            fail_closed: Refuse (True) or accept (False) tokens when the
                store cannot be consulted
            clock: Time source returning epoch seconds
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._store = store
        self.ttl_seconds = ttl_seconds
        self.one_time_use = one_time_use
        self.token_bytes = token_bytes
        self.fail_closed = fail_closed
        self._clock = clock

    def _key(self, token: str) -> str:
        return f"{self.KEY_PREFIX}{token}"

    def _retention(self, record: CsrfToken, now: float) -> float:
        # Keep expired entries around for one more TTL so they report
        # "expired" rather than vanishing into "not_found".
        return max(record.expires_at + self.ttl_seconds - now, 1.0)

    def _generate_token(self) -> str:
        return secrets.token_hex(self.token_bytes)

    async def issue(self, session_id: Optional[str] = None) -> str:
        """Create and store a new token.

        Args:
            session_id: Session the token is bound to, if any

        Returns:
            The opaque token string

        Raises:
            TokenCollisionError: The generated token already existed
            StoreUnavailableError: The store could not be written
        """
        token = self._generate_token()
        now = self._clock()
        record = CsrfToken(session_id=session_id, created_at=now, expires_at=now + self.ttl_seconds)

        created = await self._store.compare_and_update(
            self._key(token), None, record.to_dict(), ttl=self._retention(record, now)
        )
        if not created:
            log_security_event(
                logger,
                logging.ERROR,
                "SECURITY_CSRF_TOKEN_COLLISION",
                "Generated CSRF token already exists",
            )
            raise TokenCollisionError()

        logger.debug("CSRF token issued", extra={"code": "SECURITY_CSRF_TOKEN_ISSUED"})
        return token

    async def validate(
        self,
        token: Optional[str],
        session_id: Optional[str] = None,
        method: str = "POST",
    ) -> CsrfValidation:
        """Check a token presented by a request.

        Args:
            token: Token from the request, if any
            session_id: The request's current session
            method: HTTP method; safe methods always pass

        Returns:
            CsrfValidation with the failure reason when invalid
        """
        if method.upper() in SAFE_METHODS:
            return CsrfValidation.ok()

        if not token:
            return self._reject(CsrfFailure.MISSING, session_id)

        try:
            return await self._validate(token, session_id)
        except StoreUnavailableError:
            return self._handle_store_failure(session_id)

    async def _validate(self, token: str, session_id: Optional[str]) -> CsrfValidation:
        key = self._key(token)
        for _ in range(self.MAX_UPDATE_ATTEMPTS):
            observed = await self._store.get(key)
            if observed is None:
                return self._reject(CsrfFailure.NOT_FOUND, session_id)

            record = CsrfToken.from_dict(observed)
            now = self._clock()

            if record.is_expired(now):
                # Expiry is final, no need to compare before deleting
                await self._store.delete(key)
                return self._reject(CsrfFailure.EXPIRED, session_id)

            if record.session_id is not None and record.session_id != session_id:
                return self._reject(CsrfFailure.SESSION_MISMATCH, session_id)

            if not self.one_time_use:
                return CsrfValidation.ok()

            if record.consumed:
                return self._reject(CsrfFailure.ALREADY_USED, session_id)

            consumed = replace(record, consumed=True)
            if await self._store.compare_and_update(
                key, observed, consumed.to_dict(), ttl=self._retention(record, now)
            ):
                return CsrfValidation.ok()
            # Someone else changed the token first, re-evaluate

        logger.error("CSRF token too contended to consume")
        raise StoreUnavailableError("CSRF token update contention")

    def _reject(self, reason: CsrfFailure, session_id: Optional[str]) -> CsrfValidation:
        log_security_event(
            logger,
            logging.WARNING,
            f"SECURITY_CSRF_{reason.name}",
            f"CSRF token rejected: {reason.value}",
            reason=reason.value,
            client_id=f"session:{session_id}" if session_id else None,
        )
        return CsrfValidation.fail(reason)

    def _handle_store_failure(self, session_id: Optional[str]) -> CsrfValidation:
        """Apply the configured fail-open/fail-closed policy."""
        if self.fail_closed:
            log_security_event(
                logger,
                logging.ERROR,
                "SECURITY_CSRF_STORE_FAILURE",
                "CSRF store unavailable, token refused (fail-closed)",
                reason=CsrfFailure.STORE_UNAVAILABLE.value,
            )
            return CsrfValidation(
                valid=False, reason=CsrfFailure.STORE_UNAVAILABLE, degraded=True
            )

        log_security_event(
            logger,
            logging.WARNING,
            "SECURITY_CSRF_STORE_FAILURE",
            "CSRF store unavailable, token accepted (fail-open)",
        )
        return CsrfValidation(valid=True, degraded=True)

    async def invalidate(self, token: str) -> None:
        """Remove a single token."""
        await self._store.delete(self._key(token))

    async def invalidate_all_for_session(self, session_id: str) -> int:
        """Remove every token bound to a session (logout).

        Returns:
            Number of tokens removed
        """
        removed = 0
        for key in await self._store.keys(self.KEY_PREFIX):
            observed = await self._store.get(key)
            if observed and observed.get("session_id") == session_id:
                await self._store.delete(key)
                removed += 1
        if removed:
            logger.info(
                f"Invalidated {removed} CSRF tokens for session",
                extra={"code": "SECURITY_CSRF_SESSION_INVALIDATED"},
            )
        return removed

    async def rotate(self, session_id: str) -> str:
        """Invalidate a session's tokens and issue a fresh one."""
        await self.invalidate_all_for_session(session_id)
        return await self.issue(session_id)

    async def sweep(self) -> int:
        """Delete expired tokens.

        Only entries still equal to what the sweep observed are removed.

        Returns:
            Number of tokens removed
        """
        removed = 0
        for key in await self._store.keys(self.KEY_PREFIX):
            observed = await self._store.get(key)
            if not observed:
                continue
            if CsrfToken.from_dict(observed).is_expired(self._clock()):
                if await self._store.compare_and_update(key, observed, None):
                    removed += 1
        if removed:
            logger.debug(f"CSRF sweep removed {removed} expired tokens")
        return removed
