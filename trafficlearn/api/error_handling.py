from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException

from trafficlearn.api.schemas import Envelope, ErrorBody
from trafficlearn.logging import get_logger
from trafficlearn.service.errors import AuthFlowError, CsrfValidationFailed, ServiceError
from trafficlearn.service.session import SessionContext
from trafficlearn.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def auth_flow_redirect(ctx: Optional[SessionContext], exc: AuthFlowError) -> RedirectResponse:
    """Record the single flash notice for ``exc`` and redirect with 303."""
    if ctx is not None:
        ctx.flash(exc.notice_level, exc.notice)
    return RedirectResponse(exc.redirect_to, status_code=303)


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for auth-flow, domain and storage errors."""

    @app.exception_handler(AuthFlowError)
    async def handle_auth_flow_error(request: Request, exc: AuthFlowError):
        log_fn = logger.warning if isinstance(exc, CsrfValidationFailed) else logger.info
        log_fn(
            "auth_flow_rejected",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error_code=exc.error_code,
            redirect_to=exc.redirect_to,
            detail=exc.detail,
        )
        ctx = getattr(request.state, "session", None)
        return await run_in_threadpool(auth_flow_redirect, ctx, exc)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=len(exc.errors()),
        )
        details = [
            {"loc": list(err.get("loc", [])), "msg": err.get("msg")} for err in exc.errors()
        ]
        return _error_response(400, "invalid request", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
