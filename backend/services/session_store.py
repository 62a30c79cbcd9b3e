# services/session_store.py
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, List, Optional

import redis

from models.upload_models import UploadSession

logger = logging.getLogger(__name__)

KEY_PREFIX = "upload_session:"


class SessionStore(ABC):
    """Archive of session snapshots (parts and ETag, never part buffers)"""

    @abstractmethod
    async def save(self, session: UploadSession):
        ...

    @abstractmethod
    async def get(self, session_id: str) -> Optional[UploadSession]:
        ...

    @abstractmethod
    async def list(self) -> List[UploadSession]:
        ...

    @abstractmethod
    async def delete(self, session_id: str):
        ...


class InMemorySessionStore(SessionStore):
    def __init__(self):
        self._sessions: Dict[str, str] = {}

    async def save(self, session: UploadSession):
        self._sessions[session.session_id] = session.model_dump_json()

    async def get(self, session_id: str) -> Optional[UploadSession]:
        data = self._sessions.get(session_id)
        if data is None:
            return None
        return UploadSession.model_validate_json(data)

    async def list(self) -> List[UploadSession]:
        return [UploadSession.model_validate_json(data) for data in self._sessions.values()]

    async def delete(self, session_id: str):
        self._sessions.pop(session_id, None)


class RedisSessionStore(SessionStore):
    def __init__(self, client: redis.Redis, ttl: timedelta = timedelta(days=7)):
        self.redis_client = client
        self.session_ttl = ttl

    @classmethod
    def from_url(cls, url: str, ttl: timedelta = timedelta(days=7)) -> "RedisSessionStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=False,
            socket_connect_timeout=5,
            health_check_interval=30,
        )
        return cls(client, ttl)

    async def save(self, session: UploadSession):
        try:
            self.redis_client.setex(
                f"{KEY_PREFIX}{session.session_id}",
                int(self.session_ttl.total_seconds()),
                session.model_dump_json(),
            )
        except redis.RedisError as e:
            logger.error(f"Failed to store session {session.session_id}: {e}")
            raise

    async def get(self, session_id: str) -> Optional[UploadSession]:
        data = self.redis_client.get(f"{KEY_PREFIX}{session_id}")
        if not data:
            return None
        return UploadSession.model_validate_json(data)

    async def list(self) -> List[UploadSession]:
        sessions = []
        for key in self.redis_client.scan_iter(match=f"{KEY_PREFIX}*"):
            data = self.redis_client.get(key)
            if data:
                sessions.append(UploadSession.model_validate_json(data))
        return sessions

    async def delete(self, session_id: str):
        self.redis_client.delete(f"{KEY_PREFIX}{session_id}")


def build_session_store(redis_url: Optional[str], ttl_seconds: int) -> SessionStore:
    if redis_url:
        logger.info("Archiving sessions in Redis")
        return RedisSessionStore.from_url(redis_url, timedelta(seconds=ttl_seconds))
    return InMemorySessionStore()
