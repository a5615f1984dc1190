from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from sessionward.config import SessionLimitPolicy, Settings
from sessionward.logging import get_logger
from sessionward.service.devices import (
    detect_device_type,
    extract_device_name,
    normalize_fingerprint,
)
from sessionward.service.errors import AuthError, AuthResult
from sessionward.service.guard import call_store, storage_guarded
from sessionward.service.tokens import (
    AccessClaims,
    AccessTokenCodec,
    generate_refresh_token,
    hash_refresh_token,
)
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import Session, utcnow

logger = get_logger(__name__)

# Attempts at drawing a refresh token whose hash is not already stored
_MAX_TOKEN_DRAWS = 3


class SessionRepository(Protocol):
    def find_by_token_hash(self, token_hash: str) -> Optional[Session]: ...

    def create_session(self, session: Session) -> Session: ...

    def create_within_limit(
        self,
        session: Session,
        limit: int,
        *,
        evict_oldest: bool = True,
        now: Optional[datetime] = None,
    ) -> Optional[List[Session]]: ...

    def rotate(self, session_id: str, successor: Session, at: datetime) -> bool: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def delete_by_id(self, session_id: str) -> bool: ...

    def delete_all_for_account(self, account_id: str) -> int: ...

    def count_active_for_account(
        self, account_id: str, now: Optional[datetime] = None
    ) -> int: ...

    def list_active_for_account(
        self, account_id: str, now: Optional[datetime] = None
    ) -> List[Session]: ...

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


@dataclass(frozen=True)
class IssuedCredentials:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    session: Session
    token_type: str = "bearer"
    evicted_session_ids: List[str] = field(default_factory=list)
    rotated_from_session_id: Optional[str] = None

    @property
    def refresh_expires_at(self) -> datetime:
        return self.session.expires_at


@dataclass(frozen=True)
class SessionInfo:
    id: str
    device_name: str
    device_type: str
    created_at: datetime
    last_used_at: Optional[datetime]
    is_current: bool


class SessionManager:
    """Creates, rotates and revokes sessions.

    Refresh tokens are opaque random strings; only their SHA-256 digest is
    stored. A rotated row stays in the repository until it expires so that a
    second presentation of the same token is recognized as reuse, which
    revokes every session of the account.
    """

    def __init__(
        self,
        store: SessionRepository,
        settings: Settings,
        *,
        codec: Optional[AccessTokenCodec] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.codec = codec or AccessTokenCodec(
            settings, clock=lambda: self._clock().timestamp()
        )

    async def _store(self, fn, *args, **kwargs):
        return await call_store(
            fn, *args, timeout=self.settings.repository_timeout_seconds, **kwargs
        )

    def _issue(
        self,
        session: Session,
        refresh_token: str,
        *,
        evicted: Optional[List[Session]] = None,
        rotated_from: Optional[str] = None,
    ) -> IssuedCredentials:
        access_token, access_exp = self.codec.issue(session.account_id, session.id)
        return IssuedCredentials(
            access_token=access_token,
            access_expires_at=access_exp,
            refresh_token=refresh_token,
            session=session,
            evicted_session_ids=[victim.id for victim in evicted or []],
            rotated_from_session_id=rotated_from,
        )

    def _new_session(
        self, account_id: str, fingerprint: str, user_agent: Optional[str], now: datetime
    ) -> tuple[Session, str]:
        refresh_token = generate_refresh_token()
        session = Session.new(
            account_id=account_id,
            refresh_token_hash=hash_refresh_token(refresh_token),
            client_fingerprint=fingerprint,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            user_agent=user_agent,
            now=now,
        )
        return session, refresh_token

    @storage_guarded("session_create")
    async def create(
        self, account_id: str, user_agent: Optional[str]
    ) -> AuthResult[IssuedCredentials]:
        now = self._clock()
        fingerprint = normalize_fingerprint(user_agent)
        limit = self.settings.max_concurrent_sessions
        evict = self.settings.session_limit_policy == SessionLimitPolicy.EVICT_OLDEST
        for _ in range(_MAX_TOKEN_DRAWS):
            session, refresh_token = self._new_session(account_id, fingerprint, user_agent, now)
            try:
                evicted = await self._store(
                    self.store.create_within_limit,
                    session,
                    limit,
                    evict_oldest=evict,
                    now=now,
                )
            except ConstraintViolation:
                logger.warning("refresh_token_hash_collision", account_id=account_id)
                continue
            if evicted is None:
                logger.info("session_limit_rejected", account_id=account_id, limit=limit)
                return AuthResult.failure(AuthError.max_sessions_reached(limit))
            if evicted:
                logger.info(
                    "sessions_evicted",
                    account_id=account_id,
                    evicted=[victim.id for victim in evicted],
                )
            logger.info("session_created", account_id=account_id, session_id=session.id)
            return AuthResult.success(self._issue(session, refresh_token, evicted=evicted))
        return AuthResult.failure(AuthError.unavailable("Could not allocate a refresh token"))

    @storage_guarded("session_refresh")
    async def refresh(
        self, refresh_token: str, user_agent: Optional[str]
    ) -> AuthResult[IssuedCredentials]:
        if not refresh_token:
            return AuthResult.failure(AuthError.invalid_token())
        now = self._clock()
        current = await self._store(
            self.store.find_by_token_hash, hash_refresh_token(refresh_token)
        )
        if current is None or current.is_expired(now):
            return AuthResult.failure(AuthError.invalid_token())
        if current.rotated_at is not None:
            return await self._respond_to_reuse(current)

        fingerprint = normalize_fingerprint(user_agent)
        if not hmac.compare_digest(
            fingerprint.encode("utf-8"), current.client_fingerprint.encode("utf-8")
        ):
            logger.warning(
                "session_device_mismatch",
                account_id=current.account_id,
                session_id=current.id,
                expected=current.client_fingerprint,
                presented=fingerprint,
            )
            return AuthResult.failure(
                AuthError.device_mismatch(
                    detail={"account_id": current.account_id, "session_id": current.id}
                )
            )

        for _ in range(_MAX_TOKEN_DRAWS):
            successor, new_token = self._new_session(
                current.account_id, current.client_fingerprint, user_agent, now
            )
            try:
                rotated = await self._rotate(current, successor, now)
            except ConstraintViolation:
                logger.warning(
                    "refresh_token_hash_collision", account_id=current.account_id
                )
                continue
            if rotated is None:
                logger.error(
                    "session_rotation_unsettled",
                    account_id=current.account_id,
                    session_id=current.id,
                    successor_session_id=successor.id,
                )
                return AuthResult.failure(
                    AuthError.refresh_unsettled(
                        detail={"account_id": current.account_id, "session_id": current.id}
                    )
                )
            if not rotated:
                if await self._store(self.store.get_session, current.id) is None:
                    # Revoked by a concurrent logout, not exchanged by anyone.
                    return AuthResult.failure(AuthError.invalid_token())
                # Another request exchanged this token first: same signal as reuse.
                return await self._respond_to_reuse(current)
            logger.info(
                "session_rotated",
                account_id=current.account_id,
                session_id=successor.id,
                previous_session_id=current.id,
            )
            return AuthResult.success(
                self._issue(successor, new_token, rotated_from=current.id)
            )
        return AuthResult.failure(AuthError.unavailable("Could not allocate a refresh token"))

    async def _rotate(
        self, current: Session, successor: Session, now: datetime
    ) -> Optional[bool]:
        """Run the rotation swap; None when storage never reported an outcome.

        A worker thread cannot be cancelled, so a swap that misses the
        deadline may still commit. It gets one more deadline to settle before
        the refresh is reported as unsettled.
        """
        timeout = self.settings.repository_timeout_seconds
        write = asyncio.ensure_future(
            asyncio.to_thread(self.store.rotate, current.id, successor, now)
        )
        try:
            return await asyncio.wait_for(asyncio.shield(write), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "session_rotation_slow",
                account_id=current.account_id,
                session_id=current.id,
                timeout=timeout,
            )
        try:
            return await asyncio.wait_for(asyncio.shield(write), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def _respond_to_reuse(self, session: Session) -> AuthResult[IssuedCredentials]:
        # Revocation must finish before the theft result is returned; a storage
        # failure here propagates and becomes Unavailable.
        revoked = await self._store(self.store.delete_all_for_account, session.account_id)
        logger.warning(
            "refresh_token_reuse_detected",
            account_id=session.account_id,
            session_id=session.id,
            revoked_sessions=revoked,
        )
        return AuthResult.failure(
            AuthError.token_theft_detected(
                detail={"account_id": session.account_id, "revoked_sessions": revoked}
            )
        )

    @storage_guarded("session_revoke_all")
    async def revoke_all(self, account_id: str) -> AuthResult[int]:
        revoked = await self._store(self.store.delete_all_for_account, account_id)
        logger.info("sessions_revoked", account_id=account_id, revoked=revoked)
        return AuthResult.success(revoked)

    @storage_guarded("session_revoke_one")
    async def revoke_one(
        self, session_id: str, account_id: Optional[str] = None
    ) -> AuthResult[bool]:
        """Delete one session; with ``account_id`` only if it belongs to that account."""
        if account_id is not None:
            existing = await self._store(self.store.get_session, session_id)
            if existing is None or existing.account_id != account_id:
                return AuthResult.success(False)
        deleted = await self._store(self.store.delete_by_id, session_id)
        if deleted:
            logger.info("session_revoked", session_id=session_id)
        return AuthResult.success(deleted)

    @storage_guarded("session_lookup")
    async def find_by_refresh_token(self, refresh_token: str) -> AuthResult[Optional[Session]]:
        if not refresh_token:
            return AuthResult.success(None)
        session = await self._store(
            self.store.find_by_token_hash, hash_refresh_token(refresh_token)
        )
        return AuthResult.success(session)

    @storage_guarded("session_list")
    async def list_sessions(
        self, account_id: str, current_refresh_token: Optional[str] = None
    ) -> AuthResult[List[SessionInfo]]:
        sessions = await self._store(
            self.store.list_active_for_account, account_id, self._clock()
        )
        current_hash = (
            hash_refresh_token(current_refresh_token) if current_refresh_token else None
        )
        return AuthResult.success(
            [
                SessionInfo(
                    id=sess.id,
                    device_name=extract_device_name(sess.user_agent),
                    device_type=detect_device_type(sess.user_agent),
                    created_at=sess.created_at,
                    last_used_at=sess.last_used_at,
                    is_current=current_hash is not None
                    and sess.refresh_token_hash == current_hash,
                )
                for sess in sessions
            ]
        )

    def authenticate(self, access_token: str) -> AuthResult[AccessClaims]:
        claims = self.codec.decode(access_token) if access_token else None
        if claims is None:
            return AuthResult.failure(AuthError.invalid_token("Access token is invalid or expired"))
        return AuthResult.success(claims)

    @storage_guarded("session_sweep")
    async def sweep_expired(self) -> AuthResult[int]:
        removed = await self._store(self.store.delete_expired_sessions, self._clock())
        if removed:
            logger.debug("expired_sessions_removed", removed=removed)
        return AuthResult.success(removed)
