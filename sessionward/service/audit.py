from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from sessionward.logging import get_logger
from sessionward.storage.models import utcnow


class AuthEventType(str, Enum):
    SIGN_IN_SUCCEEDED = "sign_in_succeeded"
    SIGN_IN_FAILED = "sign_in_failed"
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_LOCKED = "account_locked"
    SESSION_CREATED = "session_created"
    SESSION_EVICTED = "session_evicted"
    SESSION_ROTATED = "session_rotated"
    SESSION_REVOKED = "session_revoked"
    SESSIONS_REVOKED = "sessions_revoked"
    TOKEN_THEFT_DETECTED = "token_theft_detected"
    DEVICE_MISMATCH = "device_mismatch"


@dataclass(frozen=True)
class AuthEvent:
    type: AuthEventType
    account_id: Optional[str] = None
    session_id: Optional[str] = None
    reason: Optional[str] = None
    at: datetime = field(default_factory=utcnow)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["at"] = self.at.isoformat()
        return payload


class AuditSink(Protocol):
    def record(self, event: AuthEvent) -> None: ...


class LoggingAuditSink:
    """Writes every lifecycle event to the ``sessionward.audit`` structlog logger."""

    _WARNING_EVENTS = frozenset(
        {
            AuthEventType.SIGN_IN_FAILED,
            AuthEventType.ACCOUNT_LOCKED,
            AuthEventType.TOKEN_THEFT_DETECTED,
            AuthEventType.DEVICE_MISMATCH,
        }
    )

    def __init__(self) -> None:
        self.logger = get_logger("sessionward.audit")

    def record(self, event: AuthEvent) -> None:
        log_fn = self.logger.warning if event.type in self._WARNING_EVENTS else self.logger.info
        log_fn(
            event.type.value,
            account_id=event.account_id,
            session_id=event.session_id,
            reason=event.reason,
            at=event.at.isoformat(),
            **event.data,
        )
