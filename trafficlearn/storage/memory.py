from __future__ import annotations

import contextlib
import threading
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional

from trafficlearn.storage.common import (
    as_date,
    deserialize_session_record,
    normalize_email,
    serialize_session_record,
)
from trafficlearn.storage.errors import ConstraintViolation
from trafficlearn.storage.models import (
    RememberMeToken,
    Role,
    SessionRecord,
    Subscription,
    UserRecord,
    UserStatus,
)


class MemoryStore:
    """In-process backing store for tests and local development.

    Implements the user store, subscription store, remember-me credential
    store and session backend interfaces.
    """

    def __init__(self) -> None:
        self.users: Dict[int, UserRecord] = {}
        self.subscriptions: Dict[int, List[Subscription]] = {}
        self.remember_tokens: Dict[str, RememberMeToken] = {}
        # session id -> (serialized record, expires_at)
        self.sessions: Dict[str, tuple[dict, datetime]] = {}
        self._user_id_seq: int = 1
        self._subscription_id_seq: int = 1
        # RLock for all data operations; nested acquisition happens when a
        # session lock holder saves or deletes the record it guards.
        self._data_lock = threading.RLock()
        self._session_locks: Dict[str, threading.RLock] = {}

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        role: Role | str = Role.LEARNER,
        *,
        first_name: str = "",
        last_name: str = "",
        status: UserStatus | str = UserStatus.ACTIVE,
        language_preference: Optional[str] = None,
    ) -> UserRecord:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = UserRecord(
                id=self._user_id_seq,
                email=normalized,
                password_hash=password_hash,
                role=Role(role),
                status=UserStatus(status),
                first_name=first_name,
                last_name=last_name,
                language_preference=language_preference,
            )
            self._user_id_seq += 1
            self.users[user.id] = user
            return user

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def update_password_hash(self, user_id: int, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.password_hash = password_hash

    def set_user_status(self, user_id: int, status: UserStatus | str) -> Optional[UserRecord]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            return user

    def update_user_role(self, user_id: int, role: Role | str) -> Optional[UserRecord]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            return user

    # subscriptions
    def add_subscription(
        self,
        user_id: int,
        start_date: date,
        end_date: date,
        *,
        status: str = "active",
        plan_id: Optional[int] = None,
    ) -> Subscription:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("subscription owner missing", {"user_id": user_id})
            sub = Subscription(
                id=self._subscription_id_seq,
                user_id=user_id,
                plan_id=plan_id,
                status=status,
                start_date=start_date,
                end_date=end_date,
            )
            self._subscription_id_seq += 1
            self.subscriptions.setdefault(user_id, []).append(sub)
            return sub

    def has_active_subscription(self, user_id: int, as_of: datetime | date) -> bool:
        day = as_date(as_of)
        with self._data_lock:
            return any(s.is_active_on(day) for s in self.subscriptions.get(user_id, []))

    # remember-me credentials
    def save_remember_token(self, token: RememberMeToken) -> None:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            self.remember_tokens[token.id] = token

    def get_remember_token(self, user_id: int, token_hash: str) -> Optional[RememberMeToken]:
        with self._data_lock:
            return next(
                (
                    t
                    for t in self.remember_tokens.values()
                    if t.user_id == user_id and t.token_hash == token_hash
                ),
                None,
            )

    def delete_remember_token(self, token_id: str) -> bool:
        with self._data_lock:
            return self.remember_tokens.pop(token_id, None) is not None

    def delete_remember_tokens(self, user_id: int) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.remember_tokens.items() if t.user_id == user_id]
            for tid in stale:
                self.remember_tokens.pop(tid, None)
            return len(stale)

    def purge_expired_remember_tokens(self, user_id: int, now: datetime) -> int:
        with self._data_lock:
            stale = [
                tid
                for tid, t in self.remember_tokens.items()
                if t.user_id == user_id and t.is_expired(now)
            ]
            for tid in stale:
                self.remember_tokens.pop(tid, None)
            return len(stale)

    # session backend
    def load_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            entry = self.sessions.get(session_id)
            if not entry:
                return None
            raw, expires_at = entry
            if expires_at <= datetime.now(timezone.utc):
                self.sessions.pop(session_id, None)
                return None
            return deserialize_session_record(raw)

    def save_session(self, record: SessionRecord, ttl_seconds: int) -> None:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        with self._data_lock:
            self.sessions[record.id] = (serialize_session_record(record), expires_at)

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)
            self._session_locks.pop(session_id, None)

    @contextlib.contextmanager
    def session_lock(self, session_id: str) -> Iterator[None]:
        with self._data_lock:
            lock = self._session_locks.setdefault(session_id, threading.RLock())
        with lock:
            yield
