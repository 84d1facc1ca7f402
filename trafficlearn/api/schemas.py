from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from trafficlearn.logging import get_correlation_id
from trafficlearn.storage.models import FlashNotice, Principal

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class FlashResponse(BaseModel):
    level: str
    message: str

    @classmethod
    def from_notice(cls, notice: Optional[FlashNotice]) -> Optional["FlashResponse"]:
        if notice is None:
            return None
        return cls(level=notice.level, message=notice.message)


class PrincipalResponse(BaseModel):
    user_id: int
    email: str
    first_name: str
    last_name: str
    full_name: str
    role: str
    language: str
    login_time: datetime

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            user_id=principal.user_id,
            email=principal.email,
            first_name=principal.first_name,
            last_name=principal.last_name,
            full_name=principal.full_name,
            role=principal.role.value,
            language=principal.language,
            login_time=principal.login_time,
        )


class CsrfResponse(BaseModel):
    csrf_token: str


class LoginPageResponse(BaseModel):
    csrf_token: str
    language: str
    available_languages: List[str]
    flash: Optional[FlashResponse] = None


class RegisterPageResponse(BaseModel):
    csrf_token: str
    language: str
    available_languages: List[str]
    account_types: List[str]
    flash: Optional[FlashResponse] = None


class LanguageResponse(BaseModel):
    language: str


class PageResponse(BaseModel):
    """Data behind a role-gated page; rendering happens elsewhere."""

    page: str
    principal: PrincipalResponse
    flash: Optional[FlashResponse] = None
    has_active_subscription: Optional[bool] = None


class HealthResponse(BaseModel):
    status: str
    build: str
