from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional, Protocol, Union
from zoneinfo import ZoneInfo

from trafficlearn.logging import get_logger
from trafficlearn.service.errors import AccessDenied
from trafficlearn.storage.models import Principal, Role

logger = get_logger(__name__)

LOGIN_PATH = "/auth/login"

NOTICE_LOGIN_REQUIRED = "Please login to access this page."
NOTICE_SUBSCRIPTION_EXPIRED = "Your subscription has expired. Please renew to continue."


class SubscriptionStore(Protocol):
    def has_active_subscription(self, user_id: int, as_of: datetime | date) -> bool: ...


def dashboard_path(role: Role) -> str:
    if role is Role.ADMIN:
        return "/admin/dashboard"
    elif role is Role.LEARNER:
        return "/learner/dashboard"
    elif role is Role.SCHOOL:
        return "/school/dashboard"
    raise ValueError(f"unknown role: {role!r}")


def subscription_path(role: Role) -> str:
    if role is Role.LEARNER:
        return "/learner/subscription"
    elif role is Role.SCHOOL:
        return "/school/subscription"
    elif role is Role.ADMIN:
        # admins never hold a subscription; their dashboard is the fallback
        return dashboard_path(role)
    raise ValueError(f"unknown role: {role!r}")


def access_denied_notice(required_role: Role) -> str:
    if required_role is Role.ADMIN:
        return "Access denied. Admin privileges required."
    elif required_role is Role.LEARNER:
        return "Access denied. Learner account required."
    elif required_role is Role.SCHOOL:
        return "Access denied. Driving school account required."
    raise ValueError(f"unknown role: {required_role!r}")


def requires_subscription(role: Role) -> bool:
    if role is Role.ADMIN:
        return False
    elif role is Role.LEARNER or role is Role.SCHOOL:
        return True
    raise ValueError(f"unknown role: {role!r}")


@dataclass(frozen=True)
class Allow:
    principal: Principal


@dataclass(frozen=True)
class Deny:
    reason: str
    redirect_target: str
    notice: str
    notice_level: str = "error"

    def to_error(self) -> AccessDenied:
        return AccessDenied(
            self.reason,
            redirect_to=self.redirect_target,
            notice=self.notice,
            notice_level=self.notice_level,
        )


AccessDecision = Union[Allow, Deny]


class AccessGate:
    """Decide whether a principal may reach a route.

    Checks run in a fixed order (login, role, subscription) and the first
    failure wins. The gate itself records nothing on the session.
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        *,
        tz: str = "UTC",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.tz = ZoneInfo(tz)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def today(self) -> date:
        return self._clock().astimezone(self.tz).date()

    def has_active_subscription(self, user_id: int) -> bool:
        try:
            return bool(self.subscriptions.has_active_subscription(user_id, self.today()))
        except Exception as exc:
            logger.warning("subscription_lookup_failed", user_id=user_id, error=str(exc))
            return False

    def evaluate(
        self,
        principal: Optional[Principal],
        required_role: Optional[Role] = None,
        require_active_subscription: bool = False,
    ) -> AccessDecision:
        if principal is None:
            return Deny("login", LOGIN_PATH, NOTICE_LOGIN_REQUIRED)

        role = Role(principal.role)
        if required_role is not None and role is not Role(required_role):
            return Deny(
                "role", dashboard_path(role), access_denied_notice(Role(required_role))
            )

        if require_active_subscription and requires_subscription(role):
            if not self.has_active_subscription(principal.user_id):
                return Deny(
                    "subscription",
                    subscription_path(role),
                    NOTICE_SUBSCRIPTION_EXPIRED,
                    notice_level="warning",
                )

        return Allow(principal)
