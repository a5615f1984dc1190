"""PKCE (RFC 7636) challenge store.

Each sign-in attempt gets a random state, nonce and code verifier. Only the S256
challenge leaves the server; the verifier waits in the pending-request
repository until the provider redirects back, and is released exactly once.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.errors import AuthError, AuthResult
from sessionward.service.guard import call_store, storage_guarded
from sessionward.storage.models import PendingAuthRequest, utcnow

logger = get_logger(__name__)

VERIFIER_BYTES = 32
_VERIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


class PendingAuthRepository(Protocol):
    def put(self, request: PendingAuthRequest, ttl_seconds: int) -> None: ...

    def take_once(self, state: str) -> Optional[PendingAuthRequest]:
        """Atomically remove and return the request stored under ``state``.

        The lookup itself is keyed on ``state`` (a dict key or a Redis key),
        so it is the lookup that must not leak timing about partially
        matching states. The comparison ``complete`` makes afterwards only
        guards adapters that return a row for a different state. States are
        128-bit random values, so lookup timing cannot be used to guess one.
        """
        ...

    def delete_expired_pending(self, now: Optional[datetime] = None) -> int: ...


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """32 random bytes as unpadded base64url: a 43 character verifier."""
    return _b64url(secrets.token_bytes(VERIFIER_BYTES))


def derive_code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier)) without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    return secrets.token_hex(16)


def generate_nonce() -> str:
    return secrets.token_hex(16)


def constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def is_valid_code_verifier(verifier: str) -> bool:
    return bool(_VERIFIER_PATTERN.match(verifier))


@dataclass(frozen=True)
class PkceChallenge:
    state: str
    code_challenge: str
    nonce: str
    expires_at: datetime
    code_challenge_method: str = "S256"


class PkceChallengeStore:
    def __init__(
        self,
        store: PendingAuthRepository,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    @storage_guarded("pkce_begin")
    async def begin(self) -> AuthResult[PkceChallenge]:
        verifier = generate_code_verifier()
        request = PendingAuthRequest.new(
            state=generate_state(),
            code_verifier=verifier,
            nonce=generate_nonce(),
            ttl_seconds=self.settings.pending_auth_ttl_seconds,
            now=self._clock(),
        )
        await call_store(
            self.store.put,
            request,
            self.settings.pending_auth_ttl_seconds,
            timeout=self.settings.repository_timeout_seconds,
        )
        return AuthResult.success(
            PkceChallenge(
                state=request.state,
                code_challenge=derive_code_challenge(verifier),
                nonce=request.nonce,
                expires_at=request.expires_at,
            )
        )

    @storage_guarded("pkce_complete")
    async def complete(
        self, state: str, verifier_supplied: Optional[str] = None
    ) -> AuthResult[PendingAuthRequest]:
        """Consume the pending request for ``state``.

        The entry is deleted whether or not the rest of the flow succeeds, so a
        state value can never be redeemed twice.
        """
        if not state:
            return AuthResult.failure(AuthError.invalid_state())
        pending = await call_store(
            self.store.take_once,
            state,
            timeout=self.settings.repository_timeout_seconds,
        )
        if pending is None or not constant_time_equals(pending.state, state):
            logger.info("pkce_state_unknown")
            return AuthResult.failure(AuthError.invalid_state())
        if pending.is_expired(self._clock()):
            logger.info("pkce_state_expired", created_at=pending.created_at.isoformat())
            return AuthResult.failure(AuthError.invalid_state())
        if verifier_supplied is not None:
            if not is_valid_code_verifier(verifier_supplied) or not constant_time_equals(
                verifier_supplied, pending.code_verifier
            ):
                logger.warning("pkce_verifier_mismatch")
                return AuthResult.failure(AuthError.invalid_pkce())
        return AuthResult.success(pending)

    async def sweep_expired(self) -> int:
        return await call_store(
            self.store.delete_expired_pending,
            self._clock(),
            timeout=self.settings.repository_timeout_seconds,
        )
