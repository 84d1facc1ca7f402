"""Common storage utilities shared between the memory, Postgres and Redis backends.

Session records travel as JSON in Redis and as plain dicts in the memory
backend, so both go through the same (de)serialisers to keep the wire shape
identical.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from trafficlearn.storage.models import (
    FlashNotice,
    Principal,
    Role,
    SessionRecord,
    UserRecord,
    UserStatus,
)


def normalize_email(email: Optional[str]) -> str:
    """Trim and lower-case an email address for lookups."""
    return (email or "").strip().lower()


def _dt_to_str(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _str_to_dt(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def serialize_principal(principal: Principal) -> Dict[str, Any]:
    return {
        "user_id": principal.user_id,
        "email": principal.email,
        "first_name": principal.first_name,
        "last_name": principal.last_name,
        "role": principal.role.value,
        "language": principal.language,
        "login_time": _dt_to_str(principal.login_time),
    }


def deserialize_principal(raw: Dict[str, Any]) -> Principal:
    return Principal(
        user_id=int(raw["user_id"]),
        email=raw.get("email", ""),
        first_name=raw.get("first_name", ""),
        last_name=raw.get("last_name", ""),
        role=Role(raw["role"]),
        language=raw.get("language") or "en",
        login_time=_str_to_dt(raw.get("login_time")) or datetime.now(timezone.utc),
    )


def serialize_session_record(record: SessionRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "created_at": _dt_to_str(record.created_at),
        "updated_at": _dt_to_str(record.updated_at),
        "principal": serialize_principal(record.principal) if record.principal else None,
        "csrf_token": record.csrf_token,
        "csrf_issued_at": _dt_to_str(record.csrf_issued_at),
        "flash": (
            {"level": record.flash.level, "message": record.flash.message}
            if record.flash
            else None
        ),
        "language": record.language,
    }


def deserialize_session_record(raw: Dict[str, Any]) -> SessionRecord:
    principal_raw = raw.get("principal")
    flash_raw = raw.get("flash")
    return SessionRecord(
        id=raw["id"],
        created_at=_str_to_dt(raw.get("created_at")) or datetime.now(timezone.utc),
        updated_at=_str_to_dt(raw.get("updated_at")) or datetime.now(timezone.utc),
        principal=deserialize_principal(principal_raw) if principal_raw else None,
        csrf_token=raw.get("csrf_token"),
        csrf_issued_at=_str_to_dt(raw.get("csrf_issued_at")),
        flash=FlashNotice(**flash_raw) if flash_raw else None,
        language=raw.get("language"),
    )


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict-like row, tolerating missing keys."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


def user_from_row(row: Dict[str, Any]) -> UserRecord:
    """Build a ``UserRecord`` from a ``users`` table row.

    The legacy schema names the role column ``user_type`` and the hash column
    ``password``.
    """
    created_at = safe_row_value(row, "created_at")
    if isinstance(created_at, datetime) and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return UserRecord(
        id=int(row["id"]),
        email=row["email"],
        password_hash=safe_row_value(row, "password", ""),
        role=Role(row["user_type"]),
        status=UserStatus(safe_row_value(row, "status", UserStatus.INACTIVE.value)),
        first_name=safe_row_value(row, "first_name", ""),
        last_name=safe_row_value(row, "last_name", ""),
        language_preference=safe_row_value(row, "language_preference"),
        created_at=created_at or datetime.now(timezone.utc),
    )


def as_date(value: datetime | date) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
