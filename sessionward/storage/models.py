from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


@dataclass
class PendingAuthRequest:
    state: str
    code_verifier: str
    nonce: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls,
        state: str,
        code_verifier: str,
        nonce: str,
        ttl_seconds: int,
        *,
        now: Optional[datetime] = None,
    ) -> "PendingAuthRequest":
        created = now or utcnow()
        return cls(
            state=state,
            code_verifier=code_verifier,
            nonce=nonce,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class Account:
    id: str
    external_subject: str
    email: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class LockoutState:
    account_id: str
    failed_attempts: int = 0
    lockout_count: int = 0
    locked_until: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None

    def copy(self, **changes) -> "LockoutState":
        return replace(self, **changes)


@dataclass
class Session:
    id: str
    account_id: str
    refresh_token_hash: str
    client_fingerprint: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    rotated_at: Optional[datetime] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        refresh_token_hash: str,
        client_fingerprint: str,
        ttl_minutes: int,
        *,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            refresh_token_hash=refresh_token_hash,
            client_fingerprint=client_fingerprint,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
            last_used_at=created,
            user_agent=user_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        """Active sessions count toward the per-account cap; rotated rows do not."""

        return self.rotated_at is None and not self.is_expired(now)
