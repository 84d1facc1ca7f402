from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from trafficlearn.logging import get_logger
from trafficlearn.service.errors import InvalidCredentials
from trafficlearn.storage.models import Principal, UserRecord

logger = get_logger(__name__)


class UserStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[UserRecord]: ...

    def get_user(self, user_id: int) -> Optional[UserRecord]: ...

    def update_password_hash(self, user_id: int, password_hash: str) -> None: ...


class CredentialVerifier:
    """Argon2id password hashing and email/password authentication."""

    def __init__(
        self,
        users: UserStore,
        *,
        default_language: str = "en",
        clock: Optional[Callable[[], datetime]] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.users = users
        self.default_language = default_language
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both failure paths
        # cost one Argon2 verification.
        self._dummy_hash = self._pwd_hasher.hash("trafficlearn-timing-equaliser")

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: str, password: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def authenticate(self, email: str, password: str) -> Principal:
        """Return the principal for an active account or raise ``InvalidCredentials``.

        Unknown email, wrong password and non-active accounts raise the same
        error so callers cannot enumerate accounts.
        """
        try:
            user = self.users.get_user_by_email(email)
        except Exception as exc:
            logger.warning("user_lookup_failed", error=str(exc))
            user = None

        if user is None:
            self.verify_password(self._dummy_hash, password)
            logger.info("authentication_failed", reason="unknown_account")
            raise InvalidCredentials()

        password_ok = self.verify_password(user.password_hash, password)
        if not password_ok or not user.is_active:
            logger.info(
                "authentication_failed",
                user_id=user.id,
                reason="bad_password" if not password_ok else "inactive_account",
            )
            raise InvalidCredentials()

        self._maybe_rehash(user, password)
        return Principal.from_user(
            user, default_language=self.default_language, login_time=self._clock()
        )

    def _maybe_rehash(self, user: UserRecord, password: str) -> None:
        try:
            if not self._pwd_hasher.check_needs_rehash(user.password_hash):
                return
        except InvalidHash:
            return
        try:
            self.users.update_password_hash(user.id, self._pwd_hasher.hash(password))
            logger.info("password_rehashed", user_id=user.id)
        except Exception as exc:
            logger.warning("password_rehash_failed", user_id=user.id, error=str(exc))
