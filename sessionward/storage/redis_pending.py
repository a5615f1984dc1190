from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

import redis
from redis.exceptions import RedisError

from sessionward.logging import get_logger
from sessionward.storage.errors import StorageUnavailable
from sessionward.storage.models import PendingAuthRequest

logger = get_logger(__name__)


class RedisPendingAuthStore:
    """Pending sign-in requests kept in Redis with native key expiry.

    ``take_once`` relies on GETDEL (Redis 6.2+), so two callbacks racing on the
    same state can never both receive the verifier.
    """

    key_prefix = "auth:pkce:"

    def __init__(self, client: Any) -> None:
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisPendingAuthStore":
        return cls(redis.Redis.from_url(redis_url, decode_responses=True))

    def _key(self, state: str) -> str:
        return f"{self.key_prefix}{state}"

    def put(self, request: PendingAuthRequest, ttl_seconds: int) -> None:
        payload = {
            "code_verifier": request.code_verifier,
            "nonce": request.nonce,
            "created_at": request.created_at.astimezone(timezone.utc).isoformat(),
            "expires_at": request.expires_at.astimezone(timezone.utc).isoformat(),
        }
        try:
            self.client.set(self._key(request.state), json.dumps(payload), ex=max(ttl_seconds, 1))
        except RedisError as exc:
            raise StorageUnavailable("pending auth write failed") from exc

    def take_once(self, state: str) -> Optional[PendingAuthRequest]:
        try:
            raw = self.client.getdel(self._key(state))
        except RedisError as exc:
            raise StorageUnavailable("pending auth read failed") from exc
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            payload = json.loads(raw)
            return PendingAuthRequest(
                state=state,
                code_verifier=payload["code_verifier"],
                nonce=payload["nonce"],
                created_at=datetime.fromisoformat(payload["created_at"]),
                expires_at=datetime.fromisoformat(payload["expires_at"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            # An unreadable entry cannot be redeemed; it is already deleted.
            logger.warning("pending_auth_decode_failed", error=str(exc))
            return None

    def delete_expired_pending(self, now: Optional[datetime] = None) -> int:
        # Redis expires keys on its own.
        return 0
