from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool

from trafficlearn.api.error_handling import auth_flow_redirect, register_exception_handlers
from trafficlearn.api.routes import router
from trafficlearn.config import Settings
from trafficlearn.logging import get_logger, set_correlation_id
from trafficlearn.service.errors import AuthFlowError
from trafficlearn.service.session import SessionContext

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


@asynccontextmanager
async def lifespan(app: FastAPI):
    from trafficlearn.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title=_settings.site_name, version=__version__, lifespan=lifespan)


def _apply_cookie_updates(response: Response, ctx: SessionContext, settings: Settings) -> None:
    for name, update in ctx.cookie_updates.items():
        if update.value is None:
            response.delete_cookie(
                name, path="/", secure=settings.cookie_secure, httponly=True, samesite="lax"
            )
        else:
            response.set_cookie(
                name,
                update.value,
                max_age=update.max_age,
                path="/",
                secure=settings.cookie_secure,
                httponly=True,
                samesite="lax",
            )


def _prepare_session(
    request: Request, session_id: Optional[str], remember_cookie: Optional[str]
) -> tuple[SessionContext, Optional[Response]]:
    """Open the session, expire it when idle and retry remember-me.

    Runs in the threadpool: every step may hit the session backend.
    """
    from trafficlearn.service.runtime import get_runtime

    auth = get_runtime().auth
    ctx = auth.open_session(
        session_id,
        remember_cookie=remember_cookie,
        client_ip=request.client.host if request.client else None,
    )
    try:
        auth.enforce_session_timeout(ctx)
        auth.resolve_principal(ctx)
    except AuthFlowError as exc:
        logger.info(
            "auth_flow_rejected",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            redirect_to=exc.redirect_to,
        )
        return ctx, auth_flow_redirect(ctx, exc)
    return ctx, None


@app.middleware("http")
async def bind_session(request: Request, call_next):
    """Attach the request's session before any route logic runs.

    Cookie changes recorded on the session are written to whatever response
    comes back.
    """
    from trafficlearn.service.runtime import get_runtime

    settings = get_runtime().settings
    ctx, response = await run_in_threadpool(
        _prepare_session,
        request,
        request.cookies.get(settings.session_cookie_name),
        request.cookies.get(settings.remember_cookie_name),
    )
    request.state.session = ctx
    if response is None:
        response = await call_next(request)
    _apply_cookie_updates(response, ctx, settings)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs and the response with ``X-Request-ID`` (client supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
