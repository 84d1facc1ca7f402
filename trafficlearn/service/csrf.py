from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from trafficlearn.logging import get_logger, log_security_event
from trafficlearn.service.session import SessionContext
from trafficlearn.service.tokens import MIN_TOKEN_BYTES, generate_token, tokens_match

logger = get_logger(__name__)


class CsrfGuard:
    """Per-session anti-forgery tokens with a fixed validity window.

    A token stays valid, and ``issue`` keeps returning it, until the window
    elapses; validation is repeatable and never consumes the token.
    """

    def __init__(
        self,
        *,
        expiry_seconds: int = 3600,
        token_bytes: int = MIN_TOKEN_BYTES,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.expiry = timedelta(seconds=expiry_seconds)
        self.token_bytes = token_bytes
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _is_fresh(self, issued_at: Optional[datetime], now: datetime) -> bool:
        return issued_at is not None and now - issued_at <= self.expiry

    def issue(self, ctx: SessionContext) -> str:
        now = self._clock()
        token, issued_at = ctx.csrf_state()
        if token and self._is_fresh(issued_at, now):
            return token
        token = generate_token(self.token_bytes)
        ctx.store_csrf(token, now)
        logger.debug("csrf_token_issued", session_id=(ctx.session_id or "")[:8])
        return token

    def validate(self, ctx: SessionContext, submitted: Optional[str]) -> bool:
        token, issued_at = ctx.csrf_state()
        if not token:
            return self._reject(ctx, "no_token")
        if not self._is_fresh(issued_at, self._clock()):
            return self._reject(ctx, "expired")
        if not tokens_match(token, submitted):
            return self._reject(ctx, "mismatch" if submitted else "missing")
        return True

    def _reject(self, ctx: SessionContext, reason: str) -> bool:
        log_security_event(
            "csrf_validation_failed",
            logger=logger,
            reason=reason,
            ip_addr=ctx.client_ip,
        )
        return False
