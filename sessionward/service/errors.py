from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class AuthErrorKind(str, Enum):
    """Every way a sign-in, refresh or revocation can fail.

    Each kind carries the HTTP status an API layer should answer with and a
    stable error code for response bodies:
    - invalid_state (401)
    - invalid_pkce (400)
    - provider_auth_failed (401)
    - claim_validation_failed (401)
    - account_locked (423)
    - invalid_token (401)
    - token_theft_detected (401)
    - device_mismatch (401)
    - max_sessions_reached (409)
    - unavailable (503)
    """

    INVALID_STATE = "invalid_state"
    INVALID_PKCE = "invalid_pkce"
    PROVIDER_AUTH_FAILED = "provider_auth_failed"
    CLAIM_VALIDATION_FAILED = "claim_validation_failed"
    ACCOUNT_LOCKED = "account_locked"
    INVALID_TOKEN = "invalid_token"
    TOKEN_THEFT_DETECTED = "token_theft_detected"
    DEVICE_MISMATCH = "device_mismatch"
    MAX_SESSIONS_REACHED = "max_sessions_reached"
    UNAVAILABLE = "unavailable"


_STATUS_CODES = {
    AuthErrorKind.INVALID_STATE: 401,
    AuthErrorKind.INVALID_PKCE: 400,
    AuthErrorKind.PROVIDER_AUTH_FAILED: 401,
    AuthErrorKind.CLAIM_VALIDATION_FAILED: 401,
    AuthErrorKind.ACCOUNT_LOCKED: 423,
    AuthErrorKind.INVALID_TOKEN: 401,
    AuthErrorKind.TOKEN_THEFT_DETECTED: 401,
    AuthErrorKind.DEVICE_MISMATCH: 401,
    AuthErrorKind.MAX_SESSIONS_REACHED: 409,
    AuthErrorKind.UNAVAILABLE: 503,
}

_REAUTH_KINDS = frozenset({AuthErrorKind.ACCOUNT_LOCKED, AuthErrorKind.TOKEN_THEFT_DETECTED})


@dataclass(frozen=True)
class AuthError:
    kind: AuthErrorKind
    message: str
    reason: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    detail: dict = field(default_factory=dict)
    reauth: bool = False

    @property
    def error_code(self) -> str:
        return self.kind.value

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.kind]

    @property
    def requires_reauth(self) -> bool:
        """True when the caller must restart sign-in from scratch."""
        return self.reauth or self.kind in _REAUTH_KINDS

    @property
    def retryable(self) -> bool:
        return not self.requires_reauth

    @classmethod
    def invalid_state(cls, message: str = "Sign-in request is unknown or expired") -> "AuthError":
        return cls(AuthErrorKind.INVALID_STATE, message)

    @classmethod
    def invalid_pkce(cls, message: str = "Code verifier does not match") -> "AuthError":
        return cls(AuthErrorKind.INVALID_PKCE, message)

    @classmethod
    def provider_auth_failed(cls, message: str = "Identity provider rejected the sign-in") -> "AuthError":
        return cls(AuthErrorKind.PROVIDER_AUTH_FAILED, message)

    @classmethod
    def claim_validation_failed(cls, reason: str, message: Optional[str] = None) -> "AuthError":
        return cls(
            AuthErrorKind.CLAIM_VALIDATION_FAILED,
            message or f"Identity token claim check failed: {reason}",
            reason=reason,
        )

    @classmethod
    def account_locked(cls, retry_after_seconds: int, message: Optional[str] = None) -> "AuthError":
        return cls(
            AuthErrorKind.ACCOUNT_LOCKED,
            message or "Account is temporarily locked",
            retry_after_seconds=retry_after_seconds,
        )

    @classmethod
    def invalid_token(cls, message: str = "Refresh token is invalid or expired") -> "AuthError":
        return cls(AuthErrorKind.INVALID_TOKEN, message)

    @classmethod
    def token_theft_detected(
        cls, message: str = "Refresh token reuse detected", *, detail: Optional[dict] = None
    ) -> "AuthError":
        return cls(AuthErrorKind.TOKEN_THEFT_DETECTED, message, detail=detail or {})

    @classmethod
    def device_mismatch(
        cls, message: str = "Session belongs to a different device", *, detail: Optional[dict] = None
    ) -> "AuthError":
        return cls(AuthErrorKind.DEVICE_MISMATCH, message, detail=detail or {})

    @classmethod
    def max_sessions_reached(cls, limit: int) -> "AuthError":
        return cls(
            AuthErrorKind.MAX_SESSIONS_REACHED,
            f"Account already has {limit} active sessions",
            detail={"limit": limit},
        )

    @classmethod
    def unavailable(cls, message: str = "Authentication backend unavailable") -> "AuthError":
        return cls(AuthErrorKind.UNAVAILABLE, message)

    @classmethod
    def refresh_unsettled(
        cls, message: str = "Session refresh did not complete; sign in again", *, detail: Optional[dict] = None
    ) -> "AuthError":
        """Storage never confirmed the rotation, so the presented token may already be spent."""
        return cls(AuthErrorKind.UNAVAILABLE, message, detail=detail or {}, reauth=True)

    def to_dict(self) -> dict[str, Any]:
        """Client-facing body. ``detail`` is internal context for logs and audit only."""
        body: dict[str, Any] = {"code": self.error_code, "message": self.message}
        if self.reason:
            body["reason"] = self.reason
        if self.retry_after_seconds is not None:
            body["retry_after_seconds"] = self.retry_after_seconds
        if self.reauth:
            body["requires_reauth"] = True
        return body


@dataclass(frozen=True)
class AuthResult(Generic[T]):
    """Outcome of an engine operation: either a value or an AuthError."""

    value: Optional[T] = None
    error: Optional[AuthError] = None

    @classmethod
    def success(cls, value: T = None) -> "AuthResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AuthError) -> "AuthResult[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> Optional[AuthErrorKind]:
        return self.error.kind if self.error else None

    def unwrap(self) -> T:
        """Return the value; only for callers that already checked ``ok``."""
        if self.error is not None:
            raise ValueError(f"unwrap() on failed result: {self.error.error_code}")
        return self.value  # type: ignore[return-value]


__all__ = ["AuthErrorKind", "AuthError", "AuthResult"]
