from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from trafficlearn.config import Settings
from trafficlearn.logging import get_logger, log_activity, log_security_event
from trafficlearn.service.access import AccessDecision, AccessGate, Deny
from trafficlearn.service.csrf import CsrfGuard
from trafficlearn.service.errors import (
    CsrfValidationFailed,
    InvalidCredentials,
    RegistrationRejected,
    SessionExpired,
)
from trafficlearn.service.passwords import CredentialVerifier, UserStore
from trafficlearn.service.remember_me import RememberMeManager, RememberTokenStore
from trafficlearn.service.session import SessionBackend, SessionContext
from trafficlearn.storage.errors import ConstraintViolation
from trafficlearn.storage.models import Principal, Role, UserRecord

LOGIN_SUCCESS_NOTICE = "Login successful. Welcome back!"
LOGOUT_NOTICE = "You have been logged out."
REGISTER_SUCCESS_NOTICE = "Registration successful. Please login to continue."
EMAIL_TAKEN_NOTICE = "An account with this email address already exists."

# admins are provisioned out of band
SELF_SERVICE_ROLES = (Role.LEARNER, Role.SCHOOL)


class AuthStore(UserStore, RememberTokenStore, Protocol):
    def has_active_subscription(self, user_id: int, as_of) -> bool: ...

    def create_user(
        self,
        email: str,
        password_hash: str,
        role: Role,
        *,
        first_name: str = "",
        last_name: str = "",
        language_preference: Optional[str] = None,
    ) -> UserRecord: ...


class AuthService:
    """Authentication, session lifecycle, CSRF, remember-me and access checks.

    Every per-request operation takes the request's ``SessionContext``; the
    service itself holds no per-user state.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionBackend,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.logger = get_logger(__name__)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.credentials = CredentialVerifier(
            store, default_language=settings.default_language, clock=self._now
        )
        self.csrf = CsrfGuard(
            expiry_seconds=settings.csrf_expiry_seconds,
            token_bytes=settings.token_bytes,
            clock=self._now,
        )
        self.remember = RememberMeManager(store, store, settings, clock=self._now)
        self.gate = AccessGate(store, tz=settings.timezone, clock=self._now)

    def _now(self) -> datetime:
        return self._clock()

    def open_session(
        self,
        session_id: Optional[str] = None,
        *,
        remember_cookie: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> SessionContext:
        return SessionContext(
            self.sessions,
            self.settings,
            session_id=session_id,
            remember_cookie=remember_cookie,
            client_ip=client_ip,
            clock=self._now,
        )

    # credentials
    def authenticate(self, email: str, password: str) -> Principal:
        return self.credentials.authenticate(email, password)

    def hash_password(self, password: str) -> str:
        return self.credentials.hash_password(password)

    # session lifecycle
    def start_session(self, ctx: SessionContext, principal: Principal) -> Principal:
        return ctx.create(principal)

    def current_principal(self, ctx: SessionContext) -> Optional[Principal]:
        return ctx.current()

    def end_session(self, ctx: SessionContext) -> None:
        ctx.destroy()

    def enforce_session_timeout(self, ctx: SessionContext) -> None:
        """Destroy an idle-expired session or slide the window of a live one.

        Raises ``SessionExpired`` after destroying, so the caller is sent to
        the login page with one notice.
        """
        principal = ctx.current()
        if principal is None:
            return
        if ctx.is_expired():
            ctx.destroy()
            self.logger.info("session_expired", user_id=principal.user_id)
            raise SessionExpired("session idle lifetime exceeded")
        ctx.touch()

    # CSRF
    def issue_csrf_token(self, ctx: SessionContext) -> str:
        return self.csrf.issue(ctx)

    def validate_csrf_token(self, ctx: SessionContext, token: Optional[str]) -> bool:
        return self.csrf.validate(ctx, token)

    def require_csrf(self, ctx: SessionContext, token: Optional[str]) -> None:
        if not self.csrf.validate(ctx, token):
            raise CsrfValidationFailed("csrf token rejected")

    # remember-me
    def issue_remember_me(self, ctx: SessionContext, user_id: int) -> str:
        return self.remember.issue(ctx, user_id)

    def try_remember_me_login(
        self, ctx: SessionContext, cookie_value: Optional[str]
    ) -> Optional[Principal]:
        principal = self.remember.validate(ctx, cookie_value)
        if principal is not None:
            log_activity(
                "User Login",
                principal.user_id,
                "Remember-me login",
                ip_addr=ctx.client_ip,
                logger=self.logger,
            )
        return principal

    def clear_remember_me(self, ctx: SessionContext, user_id: Optional[int]) -> int:
        return self.remember.clear(ctx, user_id)

    def resolve_principal(self, ctx: SessionContext) -> Optional[Principal]:
        """The session principal, falling back to a silent remember-me login."""
        principal = ctx.current()
        if principal is None and ctx.remember_cookie:
            principal = self.try_remember_me_login(ctx, ctx.remember_cookie)
        return principal

    # access control
    def check_access(
        self,
        ctx: SessionContext,
        required_role: Optional[Role] = None,
        require_active_subscription: bool = False,
    ) -> AccessDecision:
        principal = self.resolve_principal(ctx)
        decision = self.gate.evaluate(principal, required_role, require_active_subscription)
        if isinstance(decision, Deny):
            log_security_event(
                "access_denied",
                logger=self.logger,
                reason=decision.reason,
                user_id=principal.user_id if principal else None,
                required_role=Role(required_role).value if required_role else None,
            )
        return decision

    # login / logout
    def login(
        self, ctx: SessionContext, email: str, password: str, remember: bool = False
    ) -> Principal:
        try:
            principal = self.authenticate(email, password)
        except InvalidCredentials:
            log_security_event("login_failed", logger=self.logger, ip_addr=ctx.client_ip)
            raise
        principal = self.start_session(ctx, principal)
        if remember:
            self.issue_remember_me(ctx, principal.user_id)
        log_activity(
            "User Login",
            principal.user_id,
            "Successful login",
            ip_addr=ctx.client_ip,
            logger=self.logger,
        )
        ctx.flash("success", LOGIN_SUCCESS_NOTICE)
        return principal

    def logout(self, ctx: SessionContext) -> None:
        principal = ctx.current()
        user_id = principal.user_id if principal else None
        self.clear_remember_me(ctx, user_id)
        self.end_session(ctx)
        if user_id is not None:
            log_activity(
                "User Logout", user_id, "User logged out", ip_addr=ctx.client_ip, logger=self.logger
            )
        ctx.flash("success", LOGOUT_NOTICE)

    # registration
    def register(
        self,
        ctx: SessionContext,
        *,
        role: str,
        email: str,
        password: str,
        confirm_password: str,
        first_name: str,
        last_name: str,
        language: Optional[str] = None,
    ) -> UserRecord:
        """Create a learner or driving-school account and send the visitor to login."""
        try:
            account_role = Role(role)
        except ValueError:
            account_role = None
        if account_role not in SELF_SERVICE_ROLES:
            raise RegistrationRejected(
                "account type not open for sign-up",
                notice="Please choose a learner or driving school account.",
            )
        email = email.strip()
        if not (email and first_name.strip() and last_name.strip() and password):
            raise RegistrationRejected("missing required fields")
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise RegistrationRejected("invalid email", notice="Please enter a valid email address.")
        if len(password) < self.settings.password_min_length:
            raise RegistrationRejected(
                "password too short",
                notice=f"Password must be at least {self.settings.password_min_length} characters.",
            )
        if password != confirm_password:
            raise RegistrationRejected("password confirmation mismatch", notice="Passwords do not match.")
        language = language or self.settings.default_language
        if language not in self.settings.available_languages:
            language = self.settings.default_language

        try:
            user = self.store.create_user(
                email,
                self.hash_password(password),
                account_role,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                language_preference=language,
            )
        except ConstraintViolation as exc:
            self.logger.info("registration_rejected", field=exc.field, ip_addr=ctx.client_ip)
            raise RegistrationRejected("email already registered", notice=EMAIL_TAKEN_NOTICE) from exc
        log_activity(
            "User Registration",
            user.id,
            f"New {account_role.value} registered",
            ip_addr=ctx.client_ip,
            logger=self.logger,
        )
        ctx.flash("success", REGISTER_SUCCESS_NOTICE)
        return user
