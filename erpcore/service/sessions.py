from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol

from erpcore.config import Settings
from erpcore.logging import get_logger
from erpcore.storage.models import Session, Subject, as_utc, utcnow

logger = get_logger(__name__)


class SessionCache(Protocol):
    async def store_session(self, session: Session) -> None: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def delete_subject_sessions(self, subject_id: str) -> int: ...


class SessionService:
    """Server-side sessions keyed by opaque ids.

    Uses Redis when a cache is configured, otherwise a process-local map
    (single instance deployments and tests).
    """

    def __init__(self, settings: Settings, cache: Optional[SessionCache] = None) -> None:
        self.settings = settings
        self.cache = cache
        self._state_lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    async def create(
        self,
        subject: Subject,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        ttl_minutes = (
            self.settings.remember_me_session_ttl_minutes
            if remember_me
            else self.settings.session_ttl_minutes
        )
        session = Session.new(
            subject,
            ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=remember_me,
        )
        if self.cache:
            await self.cache.store_session(session)
        else:
            with self._state_lock:
                self._prune_locked()
                self._sessions[session.id] = session
        logger.info("session_created", subject_id=subject.id, remember_me=remember_me)
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        if self.cache:
            return await self.cache.get_session(session_id)
        with self._state_lock:
            session = self._sessions.get(session_id)
            if session and as_utc(session.expires_at) <= utcnow():
                del self._sessions[session_id]
                return None
            return session

    async def delete(self, session_id: Optional[str]) -> bool:
        """Drop one session; unknown or empty ids are a no-op."""
        if not session_id:
            return False
        if self.cache:
            return await self.cache.delete_session(session_id)
        with self._state_lock:
            return self._sessions.pop(session_id, None) is not None

    async def delete_for_subject(self, subject_id: str) -> int:
        if self.cache:
            revoked = await self.cache.delete_subject_sessions(subject_id)
        else:
            with self._state_lock:
                doomed = [sid for sid, sess in self._sessions.items() if sess.subject_id == subject_id]
                for sid in doomed:
                    del self._sessions[sid]
                revoked = len(doomed)
        if revoked:
            logger.info("sessions_revoked", subject_id=subject_id, count=revoked)
        return revoked

    def _prune_locked(self) -> None:
        now = utcnow()
        expired = [sid for sid, sess in self._sessions.items() if as_utc(sess.expires_at) <= now]
        for sid in expired:
            del self._sessions[sid]
