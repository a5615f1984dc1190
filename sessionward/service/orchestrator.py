from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Protocol
from urllib.parse import urlencode

from sessionward.config import Settings, validate_redirect_uri
from sessionward.logging import get_logger
from sessionward.service.audit import AuditSink, AuthEvent, AuthEventType, LoggingAuditSink
from sessionward.service.claims import ClaimsValidator, IdentityClaims
from sessionward.service.errors import AuthError, AuthErrorKind, AuthResult
from sessionward.service.exchange import (
    ProviderUnavailable,
    TokenExchangeClient,
    TokenExchangeError,
)
from sessionward.service.guard import call_store, storage_guarded
from sessionward.service.lockout import (
    LockoutRepository,
    LockoutStateMachine,
    format_lockout_duration,
)
from sessionward.service.pkce import PendingAuthRepository, PkceChallengeStore
from sessionward.service.sessions import (
    IssuedCredentials,
    SessionInfo,
    SessionManager,
    SessionRepository,
)
from sessionward.service.tokens import AccessClaims
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import Account, utcnow

logger = get_logger(__name__)


class AccountRepository(Protocol):
    def find_by_external_subject(self, external_subject: str) -> Optional[Account]: ...

    def find_by_id(self, account_id: str) -> Optional[Account]: ...

    def create_account(
        self,
        external_subject: str,
        email: Optional[str] = None,
        email_verified: bool = False,
    ) -> Account: ...

    def update_last_login(self, account_id: str, at: datetime) -> None: ...

    def update_email(
        self, account_id: str, email: Optional[str], email_verified: bool
    ) -> Optional[Account]: ...


@dataclass(frozen=True)
class SignInChallenge:
    state: str
    authorization_url: str
    code_challenge: str
    expires_at: datetime


@dataclass(frozen=True)
class SignInResult:
    account: Account
    credentials: IssuedCredentials
    account_created: bool = False


class AuthFlowOrchestrator:
    """Sign-in, refresh and logout flows for one identity provider.

    Built once per process with its repositories, token exchange client and
    audit sink passed in. Every public flow returns an AuthResult; callers
    branch on ``result.error.kind``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        accounts: AccountRepository,
        lockouts: LockoutRepository,
        sessions: SessionRepository,
        pending: PendingAuthRepository,
        exchange_client: TokenExchangeClient,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.accounts = accounts
        self.exchange_client = exchange_client
        self.audit: AuditSink = audit or LoggingAuditSink()
        self._clock = clock
        self.pkce = PkceChallengeStore(pending, settings, clock=clock)
        self.claims = ClaimsValidator(settings, clock=lambda: clock().timestamp())
        self.lockout = LockoutStateMachine(lockouts, settings, clock=clock)
        self.sessions = SessionManager(sessions, settings, clock=clock)

    @classmethod
    def from_store(
        cls,
        settings: Settings,
        store: Any,
        exchange_client: TokenExchangeClient,
        **kwargs: Any,
    ) -> "AuthFlowOrchestrator":
        """Wire every repository to one object implementing all of them (e.g. MemoryStore)."""
        return cls(
            settings,
            accounts=store,
            lockouts=store,
            sessions=store,
            pending=store,
            exchange_client=exchange_client,
            **kwargs,
        )

    async def _store(self, fn, *args, **kwargs):
        return await call_store(
            fn, *args, timeout=self.settings.repository_timeout_seconds, **kwargs
        )

    def _emit(self, event_type: AuthEventType, **kwargs: Any) -> None:
        self.audit.record(AuthEvent(type=event_type, at=self._clock(), **kwargs))

    def _failed(self, error: AuthError, account_id: Optional[str] = None) -> AuthResult:
        self._emit(
            AuthEventType.SIGN_IN_FAILED,
            account_id=account_id,
            reason=error.reason or error.error_code,
        )
        return AuthResult.failure(error)

    # sign-in
    async def initiate(self) -> AuthResult[SignInChallenge]:
        """Start a sign-in: persist PKCE material and build the provider URL.

        Raises ValueError when the provider client is not configured; that is a
        deployment error, not an authentication outcome.
        """
        if not self.settings.client_id:
            raise ValueError("OAuth client_id is not configured")
        if not self.settings.redirect_uri:
            raise ValueError("No OAuth redirect URI configured")
        callback_uri = validate_redirect_uri(self.settings.redirect_uri)

        begun = await self.pkce.begin()
        if not begun.ok:
            return AuthResult.failure(begun.error)
        challenge = begun.unwrap()
        params = {
            "client_id": self.settings.client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": self.settings.scope,
            "state": challenge.state,
            "code_challenge": challenge.code_challenge,
            "code_challenge_method": challenge.code_challenge_method,
            "nonce": challenge.nonce,
        }
        if self.settings.response_mode:
            params["response_mode"] = self.settings.response_mode
        authorization_url = f"{self.settings.authorization_endpoint}?{urlencode(params)}"
        return AuthResult.success(
            SignInChallenge(
                state=challenge.state,
                authorization_url=authorization_url,
                code_challenge=challenge.code_challenge,
                expires_at=challenge.expires_at,
            )
        )

    async def complete(
        self,
        code: str,
        state: str,
        user_agent: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> AuthResult[SignInResult]:
        pending_result = await self.pkce.complete(state, code_verifier)
        if not pending_result.ok:
            return self._failed(pending_result.error)
        pending = pending_result.unwrap()
        if not code:
            return self._failed(AuthError.provider_auth_failed("Authorization code missing"))

        try:
            raw_claims = await asyncio.wait_for(
                self.exchange_client.exchange(code, pending.code_verifier),
                timeout=self.settings.provider_timeout_seconds,
            )
        except TokenExchangeError as exc:
            logger.warning("provider_auth_failed", error=str(exc))
            return self._failed(AuthError.provider_auth_failed())
        except (ProviderUnavailable, asyncio.TimeoutError) as exc:
            logger.error("provider_unavailable", error=str(exc) or type(exc).__name__)
            return self._failed(AuthError.unavailable("Identity provider unavailable"))

        return await self._sign_in(raw_claims, pending.nonce, user_agent)

    @storage_guarded("sign_in")
    async def _sign_in(
        self,
        raw_claims: Mapping[str, Any],
        nonce: str,
        user_agent: Optional[str],
    ) -> AuthResult[SignInResult]:
        # The signature is already verified, so `sub` identifies whose lockout
        # counters this attempt touches even if other claims turn out invalid.
        subject = raw_claims.get("sub") if isinstance(raw_claims, Mapping) else None
        account: Optional[Account] = None
        if isinstance(subject, str) and subject:
            account = await self._store(self.accounts.find_by_external_subject, subject)

        if account is not None:
            checked = await self.lockout.check_locked(account.id)
            if not checked.ok:
                return AuthResult.failure(checked.error)
            status = checked.unwrap()
            if status.locked:
                retry_after = status.retry_after_seconds or 0
                return self._failed(
                    AuthError.account_locked(
                        retry_after,
                        message=f"Account is locked; try again in {format_lockout_duration(retry_after)}",
                    ),
                    account_id=account.id,
                )

        validated = self.claims.validate(raw_claims if isinstance(raw_claims, Mapping) else {}, nonce)
        if not validated.ok:
            if account is not None:
                recorded = await self.lockout.record_failure(account.id)
                if not recorded.ok:
                    return AuthResult.failure(recorded.error)
                if recorded.unwrap().locked:
                    self._emit(
                        AuthEventType.ACCOUNT_LOCKED,
                        account_id=account.id,
                        data={
                            "retry_after_seconds": recorded.unwrap().retry_after_seconds,
                            "lockout_count": recorded.unwrap().lockout_count,
                        },
                    )
            return self._failed(validated.error, account_id=account.id if account else None)

        identity = validated.unwrap()
        account, created = await self._find_or_create_account(identity, account)

        cleared = await self.lockout.record_success(account.id)
        if not cleared.ok:
            return AuthResult.failure(cleared.error)
        await self._store(self.accounts.update_last_login, account.id, self._clock())

        issued = await self.sessions.create(account.id, user_agent)
        if not issued.ok:
            return self._failed(issued.error, account_id=account.id)
        credentials = issued.unwrap()

        if created:
            self._emit(AuthEventType.ACCOUNT_CREATED, account_id=account.id)
        for evicted_id in credentials.evicted_session_ids:
            self._emit(
                AuthEventType.SESSION_EVICTED,
                account_id=account.id,
                session_id=evicted_id,
                reason="session_limit",
            )
        self._emit(
            AuthEventType.SESSION_CREATED,
            account_id=account.id,
            session_id=credentials.session.id,
        )
        self._emit(
            AuthEventType.SIGN_IN_SUCCEEDED,
            account_id=account.id,
            session_id=credentials.session.id,
        )
        return AuthResult.success(
            SignInResult(account=account, credentials=credentials, account_created=created)
        )

    async def _find_or_create_account(
        self, identity: IdentityClaims, existing: Optional[Account]
    ) -> tuple[Account, bool]:
        if existing is None:
            try:
                created = await self._store(
                    self.accounts.create_account,
                    identity.external_subject,
                    identity.email,
                    identity.email_verified,
                )
                logger.info("account_created", account_id=created.id)
                return created, True
            except ConstraintViolation:
                # A concurrent first sign-in for the same subject won the insert.
                existing = await self._store(
                    self.accounts.find_by_external_subject, identity.external_subject
                )
                if existing is None:
                    raise
        if identity.email and (
            identity.email != existing.email
            or identity.email_verified != existing.email_verified
        ):
            refreshed = await self._store(
                self.accounts.update_email,
                existing.id,
                identity.email,
                identity.email_verified,
            )
            if refreshed is not None:
                existing = refreshed
        return existing, False

    # session continuation
    async def refresh(
        self, refresh_token: str, user_agent: Optional[str] = None
    ) -> AuthResult[IssuedCredentials]:
        result = await self.sessions.refresh(refresh_token, user_agent)
        if result.ok:
            credentials = result.unwrap()
            self._emit(
                AuthEventType.SESSION_ROTATED,
                account_id=credentials.session.account_id,
                session_id=credentials.session.id,
                data={"previous_session_id": credentials.rotated_from_session_id},
            )
        elif result.kind == AuthErrorKind.TOKEN_THEFT_DETECTED:
            self._emit(
                AuthEventType.TOKEN_THEFT_DETECTED,
                account_id=result.error.detail.get("account_id"),
                data={"revoked_sessions": result.error.detail.get("revoked_sessions")},
            )
        elif result.kind == AuthErrorKind.DEVICE_MISMATCH:
            self._emit(
                AuthEventType.DEVICE_MISMATCH,
                account_id=result.error.detail.get("account_id"),
                session_id=result.error.detail.get("session_id"),
            )
        return result

    def authenticate(self, access_token: str) -> AuthResult[AccessClaims]:
        return self.sessions.authenticate(access_token)

    # logout and session management
    async def logout(self, refresh_token: str) -> AuthResult[bool]:
        found = await self.sessions.find_by_refresh_token(refresh_token)
        if not found.ok:
            return AuthResult.failure(found.error)
        session = found.unwrap()
        if session is None:
            return AuthResult.success(False)
        return await self.revoke_session(session.id, session.account_id)

    async def logout_all(self, account_id: str) -> AuthResult[int]:
        result = await self.sessions.revoke_all(account_id)
        if result.ok:
            self._emit(
                AuthEventType.SESSIONS_REVOKED,
                account_id=account_id,
                data={"revoked_sessions": result.unwrap()},
            )
        return result

    async def revoke_session(self, session_id: str, account_id: str) -> AuthResult[bool]:
        result = await self.sessions.revoke_one(session_id, account_id)
        if result.ok and result.unwrap():
            self._emit(AuthEventType.SESSION_REVOKED, account_id=account_id, session_id=session_id)
        return result

    async def list_sessions(
        self, account_id: str, current_refresh_token: Optional[str] = None
    ) -> AuthResult[List[SessionInfo]]:
        return await self.sessions.list_sessions(account_id, current_refresh_token)

    @storage_guarded("sweep_expired")
    async def sweep_expired(self) -> AuthResult[dict]:
        """Remove expired pending requests and session rows; safe to run on a timer."""
        pending_removed = await self.pkce.sweep_expired()
        swept = await self.sessions.sweep_expired()
        if not swept.ok:
            return AuthResult.failure(swept.error)
        counts = {"pending": pending_removed, "sessions": swept.unwrap()}
        if pending_removed or counts["sessions"]:
            logger.info("auth_state_cleanup", **counts)
        return AuthResult.success(counts)
