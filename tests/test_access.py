"""Tests for the access control gate.

Tests for:
- Fixed check order (login, role, subscription)
- Admin subscription bypass
- Role to redirect mappings
- Remember-me retry before denial
"""

from datetime import timedelta

import pytest

from trafficlearn.service.access import (
    AccessGate,
    Allow,
    Deny,
    dashboard_path,
    requires_subscription,
    subscription_path,
)
from trafficlearn.service.errors import AccessDenied
from trafficlearn.storage.models import Principal, Role


def _principal(user, clock):
    return Principal.from_user(user, default_language="en", login_time=clock.now)


@pytest.fixture
def gate(store, clock):
    return AccessGate(store, tz="Africa/Kigali", clock=clock)


class TestGateScenarios:
    def test_no_session_requires_login(self, gate):
        decision = gate.evaluate(None, Role.LEARNER)

        assert isinstance(decision, Deny)
        assert decision.reason == "login"
        assert decision.redirect_target == "/auth/login"
        assert decision.notice == "Please login to access this page."

    def test_wrong_role_goes_to_own_dashboard(self, gate, make_user, clock):
        school = make_user(email="school@example.com", role=Role.SCHOOL)

        decision = gate.evaluate(_principal(school, clock), Role.ADMIN)

        assert isinstance(decision, Deny)
        assert decision.reason == "role"
        assert decision.redirect_target == "/school/dashboard"
        assert decision.notice.startswith("Access denied")

    def test_learner_without_subscription_goes_to_renewal(self, gate, make_user, clock):
        learner = make_user()

        decision = gate.evaluate(_principal(learner, clock), Role.LEARNER, True)

        assert isinstance(decision, Deny)
        assert decision.reason == "subscription"
        assert decision.redirect_target == "/learner/subscription"
        assert decision.notice == "Your subscription has expired. Please renew to continue."

    def test_admin_bypasses_subscription(self, gate, make_user, clock):
        admin = make_user(email="admin@example.com", role=Role.ADMIN)

        decision = gate.evaluate(_principal(admin, clock), Role.ADMIN, True)

        assert isinstance(decision, Allow)
        assert decision.principal.user_id == admin.id

    def test_learner_with_subscription_is_allowed(self, gate, make_user, subscribe, clock):
        learner = make_user()
        subscribe(learner)

        assert isinstance(gate.evaluate(_principal(learner, clock), Role.LEARNER, True), Allow)

    def test_role_is_checked_before_subscription(self, gate, make_user, clock):
        learner = make_user()

        decision = gate.evaluate(_principal(learner, clock), Role.SCHOOL, True)

        assert decision.reason == "role"
        assert decision.redirect_target == "/learner/dashboard"

    def test_school_without_subscription(self, gate, make_user, clock):
        school = make_user(email="school@example.com", role=Role.SCHOOL)

        decision = gate.evaluate(_principal(school, clock), Role.SCHOOL, True)

        assert decision.redirect_target == "/school/subscription"

    def test_any_authenticated_role_passes_without_requirements(self, gate, make_user, clock):
        school = make_user(email="school@example.com", role=Role.SCHOOL)

        assert isinstance(gate.evaluate(_principal(school, clock)), Allow)


class TestSubscriptionLookup:
    def test_subscription_ending_today_is_active(self, gate, make_user, subscribe, clock):
        learner = make_user()
        subscribe(learner, days=0)

        assert gate.has_active_subscription(learner.id)

    def test_subscription_ended_yesterday_is_not(self, gate, store, make_user, clock):
        learner = make_user()
        today = clock.now.date()
        store.add_subscription(learner.id, today - timedelta(days=31), today - timedelta(days=1))

        assert not gate.has_active_subscription(learner.id)

    def test_cancelled_subscription_is_not_active(self, gate, make_user, subscribe):
        learner = make_user()
        subscribe(learner, status="cancelled")

        assert not gate.has_active_subscription(learner.id)

    def test_today_follows_configured_timezone(self, store, clock):
        clock.now = clock.now.replace(hour=23, minute=30)
        gate = AccessGate(store, tz="Africa/Kigali", clock=clock)

        assert gate.today() == clock.now.date() + timedelta(days=1)

    def test_failed_lookup_denies(self, make_user, clock):
        class BrokenSubscriptions:
            def has_active_subscription(self, user_id, as_of):
                raise ConnectionError("database unavailable")

        learner = make_user()
        gate = AccessGate(BrokenSubscriptions(), clock=clock)

        decision = gate.evaluate(_principal(learner, clock), Role.LEARNER, True)

        assert decision.reason == "subscription"


class TestRoleMappings:
    @pytest.mark.parametrize("role", list(Role))
    def test_every_role_has_a_dashboard(self, role):
        assert dashboard_path(role) == f"/{role.value}/dashboard"

    def test_subscription_pages(self):
        assert subscription_path(Role.LEARNER) == "/learner/subscription"
        assert subscription_path(Role.SCHOOL) == "/school/subscription"
        assert not requires_subscription(Role.ADMIN)
        assert requires_subscription(Role.LEARNER)
        assert requires_subscription(Role.SCHOOL)

    def test_unknown_role_is_rejected(self):
        with pytest.raises(ValueError):
            dashboard_path("superuser")

    def test_deny_converts_to_access_denied(self):
        error = Deny("role", "/school/dashboard", "Access denied.").to_error()

        assert isinstance(error, AccessDenied)
        assert error.reason == "role"
        assert error.redirect_to == "/school/dashboard"
        assert error.status_code == 303
        assert error.error_code == "forbidden"


class TestCheckAccess:
    def test_remember_me_is_tried_before_denying(self, auth, new_ctx, make_user, subscribe):
        learner = make_user()
        subscribe(learner)
        value = auth.issue_remember_me(new_ctx(), learner.id)
        ctx = new_ctx(remember_cookie=value)

        decision = auth.check_access(ctx, Role.LEARNER, require_active_subscription=True)

        assert isinstance(decision, Allow)
        assert ctx.current().user_id == learner.id

    def test_check_access_uses_session_principal(self, auth, new_ctx, make_user):
        school = make_user(email="school@example.com", role=Role.SCHOOL)
        ctx = new_ctx()
        auth.start_session(ctx, auth.authenticate("school@example.com", "Learner123!"))

        decision = auth.check_access(ctx, Role.ADMIN)

        assert isinstance(decision, Deny)
        assert decision.redirect_target == "/school/dashboard"
        assert school.id == ctx.current().user_id
