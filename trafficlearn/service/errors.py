from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP status_code and a stable error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class AuthFlowError(ServiceError):
    """An authentication or authorization failure answered by a redirect.

    ``notice`` is the single user-facing flash message; it must never reveal
    internal detail such as whether an email address is registered.
    """

    status_code = 303
    error_code = "unauthorized"
    notice: str = "Please login to access this page."
    notice_level: str = "error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        redirect_to: str = "/auth/login",
        notice: Optional[str] = None,
        notice_level: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message or self.__class__.__name__, detail=detail)
        self.redirect_to = redirect_to
        if notice is not None:
            self.notice = notice
        if notice_level is not None:
            self.notice_level = notice_level


class InvalidCredentials(AuthFlowError):
    """Unknown email, wrong password and inactive account, indistinguishably."""
    notice = "Invalid email or password."


class SessionExpired(AuthFlowError):
    notice = "Your session has expired. Please login again."
    notice_level = "warning"


class CsrfValidationFailed(AuthFlowError):
    """Submitted anti-forgery token missing, expired or wrong."""
    error_code = "forbidden"
    notice = "Your form has expired or is invalid. Please try again."


class MalformedRememberMeCookie(AuthFlowError):
    notice = "Please login to access this page."


class RegistrationRejected(AuthFlowError):
    """Self-service sign-up refused; the visitor is sent back to the form."""

    error_code = "validation_error"
    notice = "Please fill in all required fields."

    def __init__(self, message: Optional[str] = None, *, notice: Optional[str] = None) -> None:
        super().__init__(message, redirect_to="/auth/register", notice=notice)


class AccessDenied(AuthFlowError):
    """Gate rejection; ``reason`` is one of ``login``, ``role``, ``subscription``."""

    error_code = "forbidden"
    notice = "Access denied."

    def __init__(
        self,
        reason: str,
        *,
        redirect_to: str,
        notice: Optional[str] = None,
        notice_level: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"access denied: {reason}",
            redirect_to=redirect_to,
            notice=notice,
            notice_level=notice_level,
            detail={"reason": reason},
        )
        self.reason = reason
        if reason == "login":
            self.error_code = "unauthorized"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ServerError",
    "AuthFlowError",
    "InvalidCredentials",
    "SessionExpired",
    "CsrfValidationFailed",
    "MalformedRememberMeCookie",
    "RegistrationRejected",
    "AccessDenied",
]
