"""Unit tests for storage helpers and the in-memory store."""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from trafficlearn.storage.common import (
    deserialize_session_record,
    serialize_session_record,
    user_from_row,
)
from trafficlearn.storage.errors import ConstraintViolation
from trafficlearn.storage.memory import MemoryStore
from trafficlearn.storage.models import (
    FlashNotice,
    Principal,
    RememberMeToken,
    Role,
    SessionRecord,
    UserStatus,
)
from trafficlearn.storage.redis_cache import RedisSessionStore

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class TestMemoryStoreUsers:
    def test_create_user_normalizes_email(self):
        store = MemoryStore()

        user = store.create_user("  Mixed@Example.COM ", "hash", Role.SCHOOL)

        assert user.email == "mixed@example.com"
        assert user.role is Role.SCHOOL
        assert store.get_user_by_email("MIXED@example.com").id == user.id

    def test_duplicate_email_is_a_constraint_violation(self):
        store = MemoryStore()
        store.create_user("a@example.com", "hash")

        with pytest.raises(ConstraintViolation):
            store.create_user("A@example.com", "hash")

    def test_status_and_role_updates(self):
        store = MemoryStore()
        user = store.create_user("a@example.com", "hash")

        store.set_user_status(user.id, "suspended")
        store.update_user_role(user.id, "admin")

        updated = store.get_user(user.id)
        assert updated.status is UserStatus.SUSPENDED
        assert not updated.is_active
        assert updated.role is Role.ADMIN
        assert store.set_user_status(999, "active") is None

    def test_subscription_needs_existing_user(self):
        with pytest.raises(ConstraintViolation):
            MemoryStore().add_subscription(1, date(2026, 1, 1), date(2026, 12, 31))


class TestMemoryStoreRememberTokens:
    def test_lookup_and_revocation(self):
        store = MemoryStore()
        user = store.create_user("a@example.com", "hash")
        token = RememberMeToken.new(user.id, "f" * 64, now=NOW, lifetime=timedelta(days=30))
        store.save_remember_token(token)

        assert store.get_remember_token(user.id, "f" * 64).id == token.id
        assert store.get_remember_token(user.id, "e" * 64) is None
        assert store.delete_remember_token(token.id)
        assert not store.delete_remember_token(token.id)

    def test_purge_only_removes_expired(self):
        store = MemoryStore()
        user = store.create_user("a@example.com", "hash")
        old = RememberMeToken.new(user.id, "a" * 64, now=NOW - timedelta(days=40), lifetime=timedelta(days=30))
        fresh = RememberMeToken.new(user.id, "b" * 64, now=NOW, lifetime=timedelta(days=30))
        store.save_remember_token(old)
        store.save_remember_token(fresh)

        assert store.purge_expired_remember_tokens(user.id, NOW) == 1
        assert list(store.remember_tokens) == [fresh.id]

    def test_token_for_unknown_user_is_rejected(self):
        token = RememberMeToken.new(5, "a" * 64, now=NOW, lifetime=timedelta(days=30))

        with pytest.raises(ConstraintViolation):
            MemoryStore().save_remember_token(token)


class TestSessionRecords:
    def _record(self):
        record = SessionRecord.new(NOW)
        record.principal = Principal(
            user_id=3,
            email="learner@example.com",
            first_name="Aline",
            last_name="Uwase",
            role=Role.LEARNER,
            language="rw",
            login_time=NOW,
        )
        record.csrf_token = "c" * 64
        record.csrf_issued_at = NOW
        record.flash = FlashNotice("success", "Login successful. Welcome back!")
        return record

    def test_serialization_preserves_every_field(self):
        record = self._record()

        assert deserialize_session_record(serialize_session_record(record)) == record

    def test_memory_session_lifecycle(self):
        store = MemoryStore()
        record = self._record()

        store.save_session(record, ttl_seconds=60)
        assert store.load_session(record.id) == record

        store.delete_session(record.id)
        assert store.load_session(record.id) is None

    def test_deleting_a_session_releases_its_lock(self):
        store = MemoryStore()
        record = self._record()
        store.save_session(record, ttl_seconds=60)

        with store.session_lock(record.id):
            store.delete_session(record.id)

        assert store._session_locks == {}

    def test_expired_memory_session_is_dropped(self):
        store = MemoryStore()
        record = self._record()
        store.save_session(record, ttl_seconds=60)
        raw, _ = store.sessions[record.id]
        store.sessions[record.id] = (raw, datetime.now(timezone.utc) - timedelta(seconds=1))

        assert store.load_session(record.id) is None
        assert record.id not in store.sessions

    def test_empty_record(self):
        assert SessionRecord.new(NOW).is_empty()
        assert not self._record().is_empty()


class TestRowMapping:
    def test_user_from_legacy_row(self):
        row = {
            "id": 9,
            "email": "school@example.com",
            "password": "$argon2id$hash",
            "user_type": "school",
            "status": "active",
            "first_name": "Kigali",
            "last_name": None,
            "language_preference": None,
            "created_at": datetime(2025, 1, 1),
        }

        user = user_from_row(row)

        assert user.id == 9
        assert user.role is Role.SCHOOL
        assert user.password_hash == "$argon2id$hash"
        assert user.last_name == ""
        assert user.created_at.tzinfo is not None


class TestRedisSessionStore:
    def _store(self):
        store = RedisSessionStore.__new__(RedisSessionStore)
        store.redis_url = "redis://localhost:6379/0"
        store.client = MagicMock()
        return store

    def test_save_uses_ttl(self):
        store = self._store()
        record = SessionRecord.new(NOW)

        store.save_session(record, 300)

        key, payload = store.client.set.call_args.args
        assert key == f"auth:session:{record.id}"
        assert store.client.set.call_args.kwargs["ex"] == 300
        assert record.id in payload

    def test_corrupt_record_is_discarded(self):
        store = self._store()
        store.client.get.return_value = "{not json"

        assert store.load_session("abc") is None
        store.client.delete.assert_called_once_with("auth:session:abc")

    def test_missing_record(self):
        store = self._store()
        store.client.get.return_value = None

        assert store.load_session("abc") is None
