from __future__ import annotations

import contextlib
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, ContextManager, Dict, Optional, Protocol

from trafficlearn.config import Settings
from trafficlearn.logging import get_logger
from trafficlearn.service.errors import ValidationError
from trafficlearn.storage.models import FlashNotice, Principal, SessionRecord

logger = get_logger(__name__)


class SessionBackend(Protocol):
    def load_session(self, session_id: str) -> Optional[SessionRecord]: ...

    def save_session(self, record: SessionRecord, ttl_seconds: int) -> None: ...

    def delete_session(self, session_id: str) -> None: ...

    def session_lock(self, session_id: str) -> ContextManager[None]: ...


@dataclass
class CookieUpdate:
    """A cookie change to apply to the outgoing response; ``value=None`` deletes."""

    value: Optional[str]
    max_age: Optional[int] = None


class SessionContext:
    """Per-request handle on one browser session.

    ``create``, ``current``, ``touch`` and ``destroy`` are the only ways the
    principal changes. Every mutation writes through to the backend; cookie
    changes are collected in ``cookie_updates`` for the HTTP layer to apply.
    """

    def __init__(
        self,
        backend: SessionBackend,
        settings: Settings,
        *,
        session_id: Optional[str] = None,
        remember_cookie: Optional[str] = None,
        client_ip: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.remember_cookie = remember_cookie
        self.client_ip = client_ip
        self.cookie_updates: Dict[str, CookieUpdate] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cookie_session_id = session_id
        self._record: Optional[SessionRecord] = None
        self._persisted = False
        if session_id:
            try:
                self._record = backend.load_session(session_id)
            except Exception as exc:
                logger.warning("session_load_failed", error=str(exc))
                self._record = None
            self._persisted = self._record is not None

    def _now(self) -> datetime:
        return self._clock()

    @property
    def session_id(self) -> Optional[str]:
        return self._record.id if self._record else None

    @property
    def lifetime(self) -> timedelta:
        return timedelta(seconds=self.settings.session_lifetime_seconds)

    def _lock(self, session_id: Optional[str]) -> ContextManager[None]:
        if not session_id:
            return contextlib.nullcontext()
        return self.backend.session_lock(session_id)

    def _ensure_record(self) -> SessionRecord:
        if self._record is None:
            self._record = SessionRecord.new(self._now())
            self._persisted = False
        return self._record

    def _persist(self) -> None:
        record = self._ensure_record()
        record.updated_at = self._now()
        self.backend.save_session(record, self.settings.session_store_ttl_seconds)
        self._persisted = True
        if record.id != self._cookie_session_id:
            self.cookie_updates[self.settings.session_cookie_name] = CookieUpdate(record.id)
            self._cookie_session_id = record.id

    # principal lifecycle
    def create(self, principal: Principal) -> Principal:
        """Bind ``principal`` to a freshly generated session id."""
        previous = self._record
        previous_id = previous.id if previous and self._persisted else None
        now = self._now()
        bound = replace(principal, login_time=now)
        with self._lock(previous_id):
            record = SessionRecord.new(now)
            record.principal = bound
            record.language = bound.language
            if previous is not None:
                # a pending notice outlives the id change; CSRF state does not
                record.flash = previous.flash
            if previous_id:
                self.backend.delete_session(previous_id)
            self._record = record
            self._persist()
        logger.info("session_created", user_id=bound.user_id, role=bound.role.value)
        return bound

    def current(self) -> Optional[Principal]:
        return self._record.principal if self._record else None

    def touch(self) -> None:
        """Slide the expiry window forward."""
        record = self._record
        if record is None or record.principal is None:
            return
        record.principal = replace(record.principal, login_time=self._now())
        self._persist()

    def destroy(self) -> None:
        """Drop all session state and issue a new, empty session id."""
        previous = self._record
        if previous is not None and self._persisted:
            with self._lock(previous.id):
                self.backend.delete_session(previous.id)
        user_id = previous.principal.user_id if previous and previous.principal else None
        self._record = SessionRecord.new(self._now())
        self._persisted = False
        self._cookie_session_id = None
        self.cookie_updates[self.settings.session_cookie_name] = CookieUpdate(None)
        logger.info("session_destroyed", user_id=user_id)

    def is_expired(self) -> bool:
        principal = self.current()
        if principal is None:
            return False
        return self._now() - principal.login_time > self.lifetime

    # flash notices
    def flash(self, level: str, message: str) -> None:
        record = self._ensure_record()
        record.flash = FlashNotice(level=level, message=message)
        self._persist()

    def peek_flash(self) -> Optional[FlashNotice]:
        return self._record.flash if self._record else None

    def pop_flash(self) -> Optional[FlashNotice]:
        record = self._record
        if record is None or record.flash is None:
            return None
        notice = record.flash
        record.flash = None
        if record.is_empty() and self._persisted:
            # nothing left worth keeping for an anonymous visitor
            self.backend.delete_session(record.id)
            self._persisted = False
            self._cookie_session_id = None
            self.clear_cookie(self.settings.session_cookie_name)
        else:
            self._persist()
        return notice

    # language
    @property
    def language(self) -> str:
        principal = self.current()
        if self._record and self._record.language:
            return self._record.language
        if principal is not None:
            return principal.language
        return self.settings.default_language

    def set_language(self, language: str) -> str:
        if language not in self.settings.available_languages:
            raise ValidationError(
                "unsupported language", detail={"available": self.settings.available_languages}
            )
        record = self._ensure_record()
        record.language = language
        if record.principal is not None:
            record.principal = replace(record.principal, language=language)
        self._persist()
        return language

    # CSRF slot
    def csrf_state(self) -> tuple[Optional[str], Optional[datetime]]:
        if self._record is None:
            return None, None
        return self._record.csrf_token, self._record.csrf_issued_at

    def store_csrf(self, token: str, issued_at: datetime) -> None:
        record = self._ensure_record()
        record.csrf_token = token
        record.csrf_issued_at = issued_at
        self._persist()

    # cookies other than the session cookie
    def set_cookie(self, name: str, value: str, *, max_age: Optional[int] = None) -> None:
        self.cookie_updates[name] = CookieUpdate(value, max_age)

    def clear_cookie(self, name: str) -> None:
        self.cookie_updates[name] = CookieUpdate(None)
