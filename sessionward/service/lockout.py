"""Progressive account lockout.

Consecutive authentication failures lock the account for
``base * multiplier ** (n - 1)`` seconds on its n-th lockout, capped at the
configured maximum so no account is ever locked permanently. The state
transitions are pure functions; the repository applies them in a single
read-modify-write so concurrent failures for one account are all counted.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.errors import AuthResult
from sessionward.service.guard import call_store, storage_guarded
from sessionward.storage.models import LockoutState, utcnow

logger = get_logger(__name__)


class LockoutRepository(Protocol):
    def get_state(self, account_id: str) -> LockoutState: ...

    def apply_failure(
        self, account_id: str, transition: Callable[[LockoutState], LockoutState]
    ) -> LockoutState: ...

    def apply_success(self, account_id: str) -> LockoutState: ...


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    locked_until: Optional[datetime]
    retry_after_seconds: Optional[int]
    failed_attempts: int
    lockout_count: int
    remaining_attempts: int


def lockout_duration(lockout_number: int, settings: Settings) -> timedelta:
    """Length of the ``lockout_number``-th consecutive lockout (1-based)."""
    exponent = max(0, lockout_number - 1)
    cap = float(settings.lockout_max_duration_seconds)
    try:
        seconds = settings.lockout_base_duration_seconds * (settings.lockout_multiplier ** exponent)
    except OverflowError:
        seconds = cap
    return timedelta(seconds=min(seconds, cap))


def format_lockout_duration(seconds: int) -> str:
    """Human-readable duration, e.g. "15 minutes" or "1 hour 1 minute"."""
    seconds = max(0, int(math.ceil(seconds)))
    minutes = math.ceil(seconds / 60)
    hours = minutes // 60
    if hours > 0:
        remaining = minutes % 60
        text = f"{hours} hour{'s' if hours > 1 else ''}"
        if remaining:
            text += f" {remaining} minute{'s' if remaining > 1 else ''}"
        return text
    if minutes > 0 and seconds >= 60:
        return f"{minutes} minute{'s' if minutes > 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


def apply_failure_transition(
    state: LockoutState, settings: Settings, now: datetime
) -> LockoutState:
    failed = state.failed_attempts
    window = settings.lockout_attempt_window_seconds
    if (
        window
        and state.last_failed_at is not None
        and (now - state.last_failed_at).total_seconds() > window
    ):
        failed = 0
    failed += 1
    if failed >= settings.lockout_threshold:
        count = state.lockout_count + 1
        return state.copy(
            failed_attempts=0,
            lockout_count=count,
            locked_until=now + lockout_duration(count, settings),
            last_failed_at=now,
        )
    return state.copy(failed_attempts=failed, last_failed_at=now)


def status_for(state: LockoutState, settings: Settings, now: datetime) -> LockoutStatus:
    remaining = max(0, settings.lockout_threshold - state.failed_attempts)
    if state.locked_until is None or state.locked_until <= now:
        return LockoutStatus(
            locked=False,
            locked_until=None,
            retry_after_seconds=None,
            failed_attempts=state.failed_attempts,
            lockout_count=state.lockout_count,
            remaining_attempts=remaining,
        )
    return LockoutStatus(
        locked=True,
        locked_until=state.locked_until,
        retry_after_seconds=int(math.ceil((state.locked_until - now).total_seconds())),
        failed_attempts=state.failed_attempts,
        lockout_count=state.lockout_count,
        remaining_attempts=0,
    )


class LockoutStateMachine:
    def __init__(
        self,
        store: LockoutRepository,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    @storage_guarded("lockout_check")
    async def check_locked(self, account_id: str) -> AuthResult[LockoutStatus]:
        state = await call_store(
            self.store.get_state,
            account_id,
            timeout=self.settings.repository_timeout_seconds,
        )
        return AuthResult.success(status_for(state, self.settings, self._clock()))

    @storage_guarded("lockout_record_failure")
    async def record_failure(self, account_id: str) -> AuthResult[LockoutStatus]:
        now = self._clock()
        state = await call_store(
            self.store.apply_failure,
            account_id,
            lambda current: apply_failure_transition(current, self.settings, now),
            timeout=self.settings.repository_timeout_seconds,
        )
        status = status_for(state, self.settings, now)
        if status.locked:
            logger.warning(
                "account_locked",
                account_id=account_id,
                lockout_count=status.lockout_count,
                retry_after_seconds=status.retry_after_seconds,
            )
        else:
            logger.info(
                "authentication_failure_recorded",
                account_id=account_id,
                failed_attempts=status.failed_attempts,
                remaining_attempts=status.remaining_attempts,
            )
        return AuthResult.success(status)

    @storage_guarded("lockout_record_success")
    async def record_success(self, account_id: str) -> AuthResult[None]:
        await call_store(
            self.store.apply_success,
            account_id,
            timeout=self.settings.repository_timeout_seconds,
        )
        return AuthResult.success(None)
