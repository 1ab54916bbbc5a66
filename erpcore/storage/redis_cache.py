from __future__ import annotations

import hashlib
import json
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from erpcore.storage.models import Session


def _session_key(session_id: str) -> str:
    return f"session:{session_id}"


def _subject_sessions_key(subject_id: str) -> str:
    return f"subject_sessions:{subject_id}"


def _rate_key(key: str) -> str:
    # Hash so client-controlled parts of the key cannot collide across scopes
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


class RedisCache:
    """Redis-backed session records and rate-limit windows."""

    # Atomic fixed-window counter: INCR, start the window TTL on first hit
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def store_session(self, session: Session) -> None:
        ttl = session.ttl_seconds()
        index_key = _subject_sessions_key(session.subject_id)
        # The index lives as long as the longest session it tracks
        index_ttl = max(ttl, await self.client.ttl(index_key))
        pipe = self.client.pipeline()
        pipe.set(_session_key(session.id), json.dumps(session.to_dict()), ex=ttl)
        pipe.sadd(index_key, session.id)
        pipe.expire(index_key, index_ttl)
        await pipe.execute()

    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = await self.client.get(_session_key(session_id))
        if not raw:
            return None
        return Session.from_dict(json.loads(raw))

    async def delete_session(self, session_id: str) -> bool:
        raw = await self.client.getdel(_session_key(session_id))
        if not raw:
            return False
        subject_id = json.loads(raw).get("subject_id")
        if subject_id:
            await self.client.srem(_subject_sessions_key(subject_id), session_id)
        return True

    async def delete_subject_sessions(self, subject_id: str) -> int:
        key = _subject_sessions_key(subject_id)
        session_ids = await self.client.smembers(key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(_session_key(session_id))
        pipe.delete(key)
        await pipe.execute()
        return len(session_ids)

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one attempt; returns (attempts in window, seconds until reset)."""
        count, ttl = await self._fixed_window(keys=[_rate_key(key)], args=[window_seconds])
        return int(count), int(ttl)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same interface as RedisCache on top of a synchronous client.

    Used in TEST_MODE: the TestClient runs each request on its own event loop,
    which an asyncio connection pool cannot follow.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(RedisCache._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def store_session(self, session: Session) -> None:
        ttl = session.ttl_seconds()
        index_key = _subject_sessions_key(session.subject_id)
        index_ttl = max(ttl, self.client.ttl(index_key))
        pipe = self.client.pipeline()
        pipe.set(_session_key(session.id), json.dumps(session.to_dict()), ex=ttl)
        pipe.sadd(index_key, session.id)
        pipe.expire(index_key, index_ttl)
        pipe.execute()

    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = self.client.get(_session_key(session_id))
        if not raw:
            return None
        return Session.from_dict(json.loads(raw))

    async def delete_session(self, session_id: str) -> bool:
        raw = self.client.getdel(_session_key(session_id))
        if not raw:
            return False
        subject_id = json.loads(raw).get("subject_id")
        if subject_id:
            self.client.srem(_subject_sessions_key(subject_id), session_id)
        return True

    async def delete_subject_sessions(self, subject_id: str) -> int:
        key = _subject_sessions_key(subject_id)
        session_ids = self.client.smembers(key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(_session_key(session_id))
        pipe.delete(key)
        pipe.execute()
        return len(session_ids)

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl = self._fixed_window(keys=[_rate_key(key)], args=[window_seconds])
        return int(count), int(ttl)

    async def close(self) -> None:
        self.client.close()
