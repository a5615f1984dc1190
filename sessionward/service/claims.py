from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.errors import AuthError, AuthResult
from sessionward.service.pkce import constant_time_equals

logger = get_logger(__name__)


class ClaimFailure:
    """Reasons reported with ClaimValidationFailed, one per violated claim."""

    ISSUER = "iss"
    AUDIENCE = "aud"
    SUBJECT = "sub"
    EXPIRED = "exp"
    ISSUED_AT = "iat"
    TOO_OLD = "iat_too_old"
    NONCE = "nonce"


@dataclass(frozen=True)
class IdentityClaims:
    external_subject: str
    email: Optional[str]
    email_verified: bool
    is_private_email: bool = False


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _as_timestamp(value: Any) -> Optional[float]:
    """NumericDate claim as seconds; None for anything that is not a finite number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        stamp = float(value)
    elif isinstance(value, str):
        try:
            stamp = float(value)
        except ValueError:
            return None
    else:
        return None
    return stamp if math.isfinite(stamp) else None


class ClaimsValidator:
    """Checks a provider ID token whose signature the exchange client already verified."""

    def __init__(
        self, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.settings = settings
        self._clock = clock

    def _fail(self, reason: str, **context: Any) -> AuthResult[IdentityClaims]:
        logger.warning("claim_validation_failed", reason=reason, **context)
        return AuthResult.failure(AuthError.claim_validation_failed(reason))

    def _audience_matches(self, aud: Any) -> bool:
        client_id = self.settings.client_id
        if isinstance(aud, str):
            return constant_time_equals(aud, client_id)
        if isinstance(aud, (list, tuple)):
            return any(isinstance(item, str) and item == client_id for item in aud)
        return False

    def validate(
        self, claims: Mapping[str, Any], expected_nonce: Optional[str]
    ) -> AuthResult[IdentityClaims]:
        now = self._clock()
        skew = self.settings.clock_skew_seconds

        if claims.get("iss") != self.settings.provider_issuer:
            return self._fail(ClaimFailure.ISSUER, iss=claims.get("iss"))
        if not self._audience_matches(claims.get("aud")):
            return self._fail(ClaimFailure.AUDIENCE)
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            return self._fail(ClaimFailure.SUBJECT)

        exp = _as_timestamp(claims.get("exp"))
        if exp is None or exp <= now - skew:
            return self._fail(ClaimFailure.EXPIRED, exp=claims.get("exp"))
        iat = _as_timestamp(claims.get("iat"))
        if iat is None or iat > now + skew:
            return self._fail(ClaimFailure.ISSUED_AT, iat=claims.get("iat"))
        if now - iat > self.settings.max_id_token_age_seconds:
            return self._fail(ClaimFailure.TOO_OLD, age_seconds=int(now - iat))

        if expected_nonce is not None:
            nonce = claims.get("nonce")
            if not isinstance(nonce, str) or not constant_time_equals(nonce, expected_nonce):
                return self._fail(ClaimFailure.NONCE)

        email = claims.get("email")
        return AuthResult.success(
            IdentityClaims(
                external_subject=subject,
                email=email if isinstance(email, str) and email else None,
                email_verified=_as_bool(claims.get("email_verified")),
                is_private_email=_as_bool(claims.get("is_private_email")),
            )
        )
