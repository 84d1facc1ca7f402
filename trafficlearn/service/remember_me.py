from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from trafficlearn.config import Settings
from trafficlearn.logging import get_logger, log_security_event
from trafficlearn.service.errors import MalformedRememberMeCookie
from trafficlearn.service.passwords import UserStore
from trafficlearn.service.session import SessionContext
from trafficlearn.service.tokens import generate_token, hash_token, tokens_match
from trafficlearn.storage.models import Principal, RememberMeToken

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"^[0-9a-f]{64,}$")


class RememberTokenStore(Protocol):
    def save_remember_token(self, token: RememberMeToken) -> None: ...

    def get_remember_token(self, user_id: int, token_hash: str) -> Optional[RememberMeToken]: ...

    def delete_remember_token(self, token_id: str) -> bool: ...

    def delete_remember_tokens(self, user_id: int) -> int: ...

    def purge_expired_remember_tokens(self, user_id: int, now: datetime) -> int: ...


def parse_cookie_value(value: Optional[str]) -> tuple[int, str]:
    """Split ``"<user_id>:<token>"`` or raise ``MalformedRememberMeCookie``."""
    if not value:
        raise MalformedRememberMeCookie("empty remember-me cookie")
    parts = value.split(":")
    if len(parts) != 2:
        raise MalformedRememberMeCookie("remember-me cookie must have two parts")
    raw_id, token = parts
    if not raw_id.isdigit() or int(raw_id) <= 0:
        raise MalformedRememberMeCookie("remember-me user id must be a positive integer")
    if not _TOKEN_RE.match(token):
        raise MalformedRememberMeCookie("remember-me token is not a hex token")
    return int(raw_id), token


class RememberMeManager:
    """Persistent login credentials carried in the ``remember_me`` cookie.

    Only a SHA-256 of each token is stored. A user may hold one credential per
    device; ``clear`` revokes all of them.
    """

    def __init__(
        self,
        tokens: RememberTokenStore,
        users: UserStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.tokens = tokens
        self.users = users
        self.settings = settings
        self.lifetime = timedelta(days=settings.remember_me_days)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def cookie_name(self) -> str:
        return self.settings.remember_cookie_name

    def issue(self, ctx: SessionContext, user_id: int) -> str:
        now = self._clock()
        purged = self.tokens.purge_expired_remember_tokens(user_id, now)
        if purged:
            logger.info("remember_me_expired_purged", user_id=user_id, count=purged)
        token = generate_token(self.settings.token_bytes)
        self.tokens.save_remember_token(
            RememberMeToken.new(user_id, hash_token(token), now=now, lifetime=self.lifetime)
        )
        value = f"{user_id}:{token}"
        ctx.set_cookie(self.cookie_name, value, max_age=int(self.lifetime.total_seconds()))
        ctx.remember_cookie = value
        logger.info("remember_me_issued", user_id=user_id)
        return value

    def validate(self, ctx: SessionContext, cookie_value: Optional[str]) -> Optional[Principal]:
        """Re-establish a session from the cookie, rotating the credential."""
        try:
            user_id, token = parse_cookie_value(cookie_value)
        except MalformedRememberMeCookie as exc:
            log_security_event(
                "remember_me_cookie_malformed",
                logger=logger,
                reason=exc.message,
                ip_addr=ctx.client_ip,
            )
            self._forget_cookie(ctx)
            return None

        now = self._clock()
        token_hash = hash_token(token)
        try:
            stored = self.tokens.get_remember_token(user_id, token_hash)
        except Exception as exc:
            logger.warning("remember_me_lookup_failed", user_id=user_id, error=str(exc))
            self._forget_cookie(ctx)
            return None
        if stored is None or not tokens_match(stored.token_hash, token_hash):
            return self._reject(ctx, user_id, "unknown_token")
        if stored.is_expired(now):
            self.tokens.delete_remember_token(stored.id)
            return self._reject(ctx, user_id, "expired")
        # whoever deletes the row owns the rotation
        if not self.tokens.delete_remember_token(stored.id):
            return self._reject(ctx, user_id, "replayed")

        try:
            user = self.users.get_user(user_id)
        except Exception as exc:
            logger.warning("user_lookup_failed", user_id=user_id, error=str(exc))
            user = None
        if user is None or not user.is_active:
            return self._reject(ctx, user_id, "inactive_account")

        principal = ctx.create(
            Principal.from_user(
                user, default_language=self.settings.default_language, login_time=now
            )
        )
        self.issue(ctx, user_id)
        logger.info("remember_me_login", user_id=user_id)
        return principal

    def clear(self, ctx: SessionContext, user_id: Optional[int]) -> int:
        revoked = 0
        if user_id is not None:
            revoked = self.tokens.delete_remember_tokens(user_id)
            logger.info("remember_me_cleared", user_id=user_id, revoked=revoked)
        self._forget_cookie(ctx)
        return revoked

    def _reject(self, ctx: SessionContext, user_id: int, reason: str) -> None:
        log_security_event(
            "remember_me_rejected",
            logger=logger,
            user_id=user_id,
            reason=reason,
            ip_addr=ctx.client_ip,
        )
        self._forget_cookie(ctx)
        return None

    def _forget_cookie(self, ctx: SessionContext) -> None:
        ctx.clear_cookie(self.cookie_name)
        ctx.remember_cookie = None
