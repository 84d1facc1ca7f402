from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Form, Header, Request
from fastapi.responses import RedirectResponse

from trafficlearn.api.schemas import (
    CsrfResponse,
    Envelope,
    FlashResponse,
    HealthResponse,
    LanguageResponse,
    LoginPageResponse,
    PageResponse,
    PrincipalResponse,
    RegisterPageResponse,
)
from trafficlearn.logging import get_logger
from trafficlearn.service.access import Deny, dashboard_path
from trafficlearn.service.auth import SELF_SERVICE_ROLES
from trafficlearn.service.errors import AuthFlowError, ServerError
from trafficlearn.service.runtime import get_runtime
from trafficlearn.service.session import SessionContext
from trafficlearn.storage.models import Principal, Role

logger = get_logger(__name__)

router = APIRouter()

_MISSING_CREDENTIALS_NOTICE = "Please enter your email and password."


def get_session(request: Request) -> SessionContext:
    ctx = getattr(request.state, "session", None)
    if ctx is None:
        raise ServerError("session middleware not installed")
    return ctx


def require_access(
    role: Optional[Role] = None, *, subscription: bool = False
) -> Callable[..., Principal]:
    """Dependency factory running the access gate before the route body."""

    def _dependency(ctx: SessionContext = Depends(get_session)) -> Principal:
        decision = get_runtime().auth.check_access(
            ctx, required_role=role, require_active_subscription=subscription
        )
        if isinstance(decision, Deny):
            raise decision.to_error()
        return decision.principal

    return _dependency


def require_csrf(
    ctx: SessionContext = Depends(get_session),
    csrf_token: Optional[str] = Form(None),
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token"),
) -> None:
    get_runtime().auth.require_csrf(ctx, csrf_token or x_csrf_token)


def _page(ctx: SessionContext, page: str, principal: Principal, **extra) -> Envelope:
    data = PageResponse(
        page=page,
        principal=PrincipalResponse.from_principal(principal),
        flash=FlashResponse.from_notice(ctx.pop_flash()),
        **extra,
    )
    return Envelope(status="ok", data=data.model_dump(mode="json"))


@router.get("/healthz", response_model=Envelope, tags=["system"])
async def healthz():
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=HealthResponse(status="ok", build=runtime.settings.build_sha).model_dump(),
    )


@router.get("/auth/csrf", response_model=Envelope, tags=["auth"])
def csrf_token(ctx: SessionContext = Depends(get_session)):
    token = get_runtime().auth.issue_csrf_token(ctx)
    return Envelope(status="ok", data=CsrfResponse(csrf_token=token).model_dump())


@router.get("/auth/login", tags=["auth"])
def login_page(ctx: SessionContext = Depends(get_session)):
    runtime = get_runtime()
    principal = ctx.current()
    if principal is not None:
        return RedirectResponse(dashboard_path(principal.role), status_code=303)
    data = LoginPageResponse(
        csrf_token=runtime.auth.issue_csrf_token(ctx),
        language=ctx.language,
        available_languages=runtime.settings.available_languages,
        flash=FlashResponse.from_notice(ctx.pop_flash()),
    )
    return Envelope(status="ok", data=data.model_dump(mode="json"))


@router.post("/auth/login", tags=["auth"], dependencies=[Depends(require_csrf)])
def login(
    email: str = Form(""),
    password: str = Form(""),
    remember_me: Optional[str] = Form(None),
    ctx: SessionContext = Depends(get_session),
):
    if not email.strip() or not password:
        raise AuthFlowError("missing credentials", notice=_MISSING_CREDENTIALS_NOTICE)
    principal = get_runtime().auth.login(
        ctx, email.strip(), password, remember=remember_me is not None
    )
    return RedirectResponse(dashboard_path(principal.role), status_code=303)


@router.get("/auth/register", tags=["auth"])
def register_page(ctx: SessionContext = Depends(get_session)):
    runtime = get_runtime()
    principal = ctx.current()
    if principal is not None:
        return RedirectResponse(dashboard_path(principal.role), status_code=303)
    data = RegisterPageResponse(
        csrf_token=runtime.auth.issue_csrf_token(ctx),
        language=ctx.language,
        available_languages=runtime.settings.available_languages,
        account_types=[role.value for role in SELF_SERVICE_ROLES],
        flash=FlashResponse.from_notice(ctx.pop_flash()),
    )
    return Envelope(status="ok", data=data.model_dump(mode="json"))


@router.post("/auth/register", tags=["auth"], dependencies=[Depends(require_csrf)])
def register(
    user_type: str = Form(""),
    first_name: str = Form(""),
    last_name: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
    language: Optional[str] = Form(None),
    ctx: SessionContext = Depends(get_session),
):
    principal = ctx.current()
    if principal is not None:
        return RedirectResponse(dashboard_path(principal.role), status_code=303)
    get_runtime().auth.register(
        ctx,
        role=user_type,
        email=email,
        password=password,
        confirm_password=confirm_password,
        first_name=first_name,
        last_name=last_name,
        language=language,
    )
    return RedirectResponse("/auth/login", status_code=303)


@router.post("/auth/logout", tags=["auth"], dependencies=[Depends(require_csrf)])
def logout(ctx: SessionContext = Depends(get_session)):
    get_runtime().auth.logout(ctx)
    return RedirectResponse("/auth/login", status_code=303)


@router.post(
    "/account/language",
    response_model=Envelope,
    tags=["account"],
    dependencies=[Depends(require_csrf)],
)
def switch_language(
    language: str = Form(...),
    ctx: SessionContext = Depends(get_session),
):
    selected = ctx.set_language(language)
    return Envelope(status="ok", data=LanguageResponse(language=selected).model_dump())


@router.get("/me", response_model=Envelope, tags=["account"])
def me(principal: Principal = Depends(require_access())):
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal).model_dump(mode="json"))


@router.get("/admin/dashboard", response_model=Envelope, tags=["admin"])
def admin_dashboard(
    principal: Principal = Depends(require_access(Role.ADMIN, subscription=True)),
    ctx: SessionContext = Depends(get_session),
):
    return _page(ctx, "admin_dashboard", principal)


@router.get("/learner/dashboard", response_model=Envelope, tags=["learner"])
def learner_dashboard(
    principal: Principal = Depends(require_access(Role.LEARNER, subscription=True)),
    ctx: SessionContext = Depends(get_session),
):
    return _page(ctx, "learner_dashboard", principal)


@router.get("/school/dashboard", response_model=Envelope, tags=["school"])
def school_dashboard(
    principal: Principal = Depends(require_access(Role.SCHOOL, subscription=True)),
    ctx: SessionContext = Depends(get_session),
):
    return _page(ctx, "school_dashboard", principal)


@router.get("/learner/subscription", response_model=Envelope, tags=["learner"])
def learner_subscription(
    principal: Principal = Depends(require_access(Role.LEARNER)),
    ctx: SessionContext = Depends(get_session),
):
    active = get_runtime().auth.gate.has_active_subscription(principal.user_id)
    return _page(ctx, "learner_subscription", principal, has_active_subscription=active)


@router.get("/school/subscription", response_model=Envelope, tags=["school"])
def school_subscription(
    principal: Principal = Depends(require_access(Role.SCHOOL)),
    ctx: SessionContext = Depends(get_session),
):
    active = get_runtime().auth.gate.has_active_subscription(principal.user_id)
    return _page(ctx, "school_subscription", principal, has_active_subscription=active)
