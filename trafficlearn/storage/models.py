from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Account types of the platform; the set is closed."""

    ADMIN = "admin"
    LEARNER = "learner"
    SCHOOL = "school"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    PENDING = "pending"


@dataclass
class UserRecord:
    id: int
    email: str
    password_hash: str
    role: Role
    status: UserStatus = UserStatus.ACTIVE
    first_name: str = ""
    last_name: str = ""
    language_preference: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass
class Subscription:
    id: int
    user_id: int
    plan_id: Optional[int]
    status: str
    start_date: date
    end_date: date

    def is_active_on(self, day: date) -> bool:
        return self.status == "active" and self.end_date >= day


@dataclass(frozen=True)
class Principal:
    """The authenticated identity bound to a session."""

    user_id: int
    email: str
    first_name: str
    last_name: str
    role: Role
    language: str
    login_time: datetime

    @classmethod
    def from_user(
        cls, user: UserRecord, *, default_language: str, login_time: datetime
    ) -> "Principal":
        return cls(
            user_id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=Role(user.role),
            language=user.language_preference or default_language,
            login_time=login_time,
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class FlashNotice:
    level: str
    message: str


@dataclass
class SessionRecord:
    id: str
    created_at: datetime
    updated_at: datetime
    principal: Optional[Principal] = None
    csrf_token: Optional[str] = None
    csrf_issued_at: Optional[datetime] = None
    flash: Optional[FlashNotice] = None
    language: Optional[str] = None

    @staticmethod
    def new_id() -> str:
        return secrets.token_urlsafe(32)

    @classmethod
    def new(cls, now: Optional[datetime] = None) -> "SessionRecord":
        ts = now or utcnow()
        return cls(id=cls.new_id(), created_at=ts, updated_at=ts)

    def is_empty(self) -> bool:
        return (
            self.principal is None
            and self.csrf_token is None
            and self.flash is None
            and self.language is None
        )


@dataclass
class RememberMeToken:
    id: str
    user_id: int
    token_hash: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls, user_id: int, token_hash: str, *, now: datetime, lifetime: timedelta
    ) -> "RememberMeToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            issued_at=now,
            expires_at=now + lifetime,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
