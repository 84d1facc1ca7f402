from __future__ import annotations

import contextlib
import json
from typing import Iterator, Optional

from redis import Redis

from trafficlearn.logging import get_logger
from trafficlearn.storage.common import (
    deserialize_session_record,
    serialize_session_record,
)
from trafficlearn.storage.models import SessionRecord

logger = get_logger(__name__)


class RedisSessionStore:
    """Redis-backed session records stored as JSON with a TTL.

    Uses a synchronous client: every auth-core store call is a short,
    request-scoped lookup.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    LOCK_TIMEOUT_SECONDS = 10
    LOCK_WAIT_SECONDS = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key(session_id: str) -> str:
        return f"auth:session:{session_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving sessions from it."""
        self.client.ping()

    def load_session(self, session_id: str) -> Optional[SessionRecord]:
        raw = self.client.get(self._key(session_id))
        if not raw:
            return None
        try:
            return deserialize_session_record(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_record_corrupt", session_id=session_id[:8], error=str(exc))
            self.client.delete(self._key(session_id))
            return None

    def save_session(self, record: SessionRecord, ttl_seconds: int) -> None:
        payload = json.dumps(serialize_session_record(record))
        self.client.set(self._key(record.id), payload, ex=max(1, int(ttl_seconds)))

    def delete_session(self, session_id: str) -> None:
        self.client.delete(self._key(session_id))

    @contextlib.contextmanager
    def session_lock(self, session_id: str) -> Iterator[None]:
        """Serialize create/destroy for one session id across workers."""
        lock = self.client.lock(
            f"auth:session_lock:{session_id}",
            timeout=self.LOCK_TIMEOUT_SECONDS,
            blocking_timeout=self.LOCK_WAIT_SECONDS,
        )
        with lock:
            yield

    def close(self) -> None:
        self.client.close()
