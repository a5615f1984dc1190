from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sessionward.logging import get_logger
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import (
    Account,
    LockoutState,
    PendingAuthRequest,
    Session,
    utcnow,
)


class MemoryStore:
    """In-process backing store implementing every repository the engine consumes.

    All reads and writes go through one re-entrant lock, so each public method is
    a single atomic step with respect to concurrent callers. Returned records are
    copies; mutating them never changes stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._accounts_by_subject: Dict[str, str] = {}
        self.lockouts: Dict[str, LockoutState] = {}
        self.sessions: Dict[str, Session] = {}
        self._sessions_by_hash: Dict[str, str] = {}
        self.pending: Dict[str, PendingAuthRequest] = {}
        self._data_lock = threading.RLock()

    # accounts
    def find_by_external_subject(self, external_subject: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._accounts_by_subject.get(external_subject)
            if account_id is None:
                return None
            return replace(self.accounts[account_id])

    def find_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def create_account(
        self,
        external_subject: str,
        email: Optional[str] = None,
        email_verified: bool = False,
    ) -> Account:
        with self._data_lock:
            if external_subject in self._accounts_by_subject:
                raise ConstraintViolation(
                    "account already exists", {"external_subject": external_subject}
                )
            account = Account(
                id=str(uuid.uuid4()),
                external_subject=external_subject,
                email=email,
                email_verified=email_verified,
            )
            self.accounts[account.id] = account
            self._accounts_by_subject[external_subject] = account.id
            return replace(account)

    def update_last_login(self, account_id: str, at: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.last_login_at = at

    def update_email(
        self, account_id: str, email: Optional[str], email_verified: bool
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.email = email
            account.email_verified = email_verified
            return replace(account)

    # lockout
    def get_state(self, account_id: str) -> LockoutState:
        with self._data_lock:
            state = self.lockouts.get(account_id)
            return replace(state) if state else LockoutState(account_id=account_id)

    def apply_failure(
        self,
        account_id: str,
        transition: Callable[[LockoutState], LockoutState],
    ) -> LockoutState:
        with self._data_lock:
            current = self.lockouts.get(account_id) or LockoutState(account_id=account_id)
            updated = transition(replace(current))
            self.lockouts[account_id] = updated
            return replace(updated)

    def apply_success(self, account_id: str) -> LockoutState:
        with self._data_lock:
            state = LockoutState(account_id=account_id)
            self.lockouts[account_id] = state
            return replace(state)

    # sessions
    def find_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._sessions_by_hash.get(token_hash)
            if session_id is None:
                return None
            return replace(self.sessions[session_id])

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.refresh_token_hash in self._sessions_by_hash:
                raise ConstraintViolation(
                    "refresh token hash already in use", {"session_id": session.id}
                )
            stored = replace(session)
            self.sessions[stored.id] = stored
            self._sessions_by_hash[stored.refresh_token_hash] = stored.id
            return replace(stored)

    def create_within_limit(
        self,
        session: Session,
        limit: int,
        *,
        evict_oldest: bool = True,
        now: Optional[datetime] = None,
    ) -> Optional[List[Session]]:
        """Insert ``session`` keeping at most ``limit`` active sessions per account.

        Returns the evicted sessions, or None when the account is full and
        eviction is disabled (nothing is written in that case).
        """
        at = now or utcnow()
        with self._data_lock:
            if session.refresh_token_hash in self._sessions_by_hash:
                raise ConstraintViolation(
                    "refresh token hash already in use", {"session_id": session.id}
                )
            active = self._active_for_account(session.account_id, at)
            overflow = len(active) - limit + 1
            evicted: List[Session] = []
            if overflow > 0:
                if not evict_oldest:
                    return None
                self.logger.debug(
                    "session_limit_eviction",
                    account_id=session.account_id,
                    evicting=overflow,
                )
                for victim in active[:overflow]:
                    self._delete(victim.id)
                    evicted.append(victim)
            self.create_session(session)
            return evicted

    def rotate(self, session_id: str, successor: Session, at: datetime) -> bool:
        """Compare-and-swap rotation.

        Marks ``session_id`` rotated and inserts ``successor`` in one step, but
        only while the old row still exists and has not been rotated. Returns
        False when the swap lost; ConstraintViolation leaves nothing changed.
        """
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.rotated_at is not None:
                return False
            self.create_session(successor)
            sess.rotated_at = at
            sess.last_used_at = at
            return True

    def delete_by_id(self, session_id: str) -> bool:
        with self._data_lock:
            return self._delete(session_id) is not None

    def delete_all_for_account(self, account_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.account_id == account_id]
            for sid in stale:
                self._delete(sid)
            return len(stale)

    def count_active_for_account(self, account_id: str, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            return len(self._active_for_account(account_id, now or utcnow()))

    def list_active_for_account(
        self, account_id: str, now: Optional[datetime] = None
    ) -> List[Session]:
        with self._data_lock:
            return self._active_for_account(account_id, now or utcnow())

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        at = now or utcnow()
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if sess.is_expired(at)]
            for sid in expired:
                self._delete(sid)
            return len(expired)

    def _active_for_account(self, account_id: str, now: datetime) -> List[Session]:
        active = [
            replace(sess)
            for sess in self.sessions.values()
            if sess.account_id == account_id and sess.is_active(now)
        ]
        active.sort(key=lambda sess: sess.created_at)
        return active

    def _delete(self, session_id: str) -> Optional[Session]:
        sess = self.sessions.pop(session_id, None)
        if sess:
            self._sessions_by_hash.pop(sess.refresh_token_hash, None)
        return sess

    # pending sign-in requests
    def put(self, request: PendingAuthRequest, ttl_seconds: int) -> None:
        with self._data_lock:
            # ttl_seconds is already reflected in request.expires_at
            self.pending[request.state] = replace(request)

    def take_once(self, state: str) -> Optional[PendingAuthRequest]:
        with self._data_lock:
            return self.pending.pop(state, None)

    def delete_expired_pending(self, now: Optional[datetime] = None) -> int:
        at = now or utcnow()
        with self._data_lock:
            expired = [key for key, req in self.pending.items() if req.is_expired(at)]
            for key in expired:
                self.pending.pop(key, None)
            return len(expired)
