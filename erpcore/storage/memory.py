from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from erpcore.logging import get_logger
from erpcore.storage.errors import ConstraintViolation
from erpcore.storage.models import (
    OneTimeToken,
    RefreshToken,
    SecurityEvent,
    Subject,
    as_utc,
    utcnow,
)


class MemoryStore:
    """In-process credential store for tests and single-node development.

    Every compound operation runs under one re-entrant lock so it has the
    same all-or-nothing behaviour as the Postgres transactions.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.subjects: Dict[str, Subject] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.reset_tokens: Dict[str, OneTimeToken] = {}
        self.verification_tokens: Dict[str, OneTimeToken] = {}
        self.security_events: List[SecurityEvent] = []
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy(subject: Optional[Subject]) -> Optional[Subject]:
        # Callers get detached copies so they cannot mutate stored state
        if subject is None:
            return None
        return replace(subject, permissions=list(subject.permissions))

    def _live_subject(self, subject_id: str) -> Optional[Subject]:
        subject = self.subjects.get(subject_id)
        if not subject or subject.is_deleted:
            return None
        return subject

    # -- subjects --------------------------------------------------------

    def create_subject(self, subject: Subject) -> Subject:
        email = subject.email.lower()
        with self._data_lock:
            for existing in self.subjects.values():
                if existing.email == email and not existing.is_deleted:
                    raise ConstraintViolation("email already exists", field="email")
            stored = replace(subject, email=email, permissions=list(subject.permissions))
            self.subjects[stored.id] = stored
            return self._copy(stored)

    def get_subject(self, subject_id: str) -> Optional[Subject]:
        with self._data_lock:
            return self._copy(self._live_subject(subject_id))

    def get_subject_by_email(self, email: str) -> Optional[Subject]:
        email = email.lower()
        with self._data_lock:
            for subject in self.subjects.values():
                if subject.email == email and not subject.is_deleted:
                    return self._copy(subject)
        return None

    def list_subjects(
        self, *, company_id: Optional[str] = None, limit: int = 100
    ) -> List[Subject]:
        with self._data_lock:
            subjects = [
                s
                for s in self.subjects.values()
                if not s.is_deleted and (company_id is None or s.company_id == company_id)
            ]
        subjects.sort(key=lambda s: s.created_at)
        return [self._copy(s) for s in subjects[:limit]]

    def record_login(self, subject_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            subject = self._live_subject(subject_id)
            if subject:
                subject.last_login_at = at or utcnow()

    def set_subject_active(self, subject_id: str, is_active: bool) -> Optional[Subject]:
        with self._data_lock:
            subject = self._live_subject(subject_id)
            if not subject:
                return None
            subject.is_active = is_active
            subject.updated_at = utcnow()
            if not is_active:
                self._drop_refresh_tokens(subject_id)
            return self._copy(subject)

    def update_subject_profile(
        self,
        subject_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Optional[Subject]:
        """Overwrite the given name fields; None leaves a field unchanged."""
        with self._data_lock:
            subject = self._live_subject(subject_id)
            if not subject:
                return None
            if first_name is not None:
                subject.first_name = first_name
            if last_name is not None:
                subject.last_name = last_name
            subject.updated_at = utcnow()
            return self._copy(subject)

    def update_subject_role(
        self, subject_id: str, role: str, permissions: List[str]
    ) -> Optional[Subject]:
        with self._data_lock:
            subject = self._live_subject(subject_id)
            if not subject:
                return None
            subject.role = role
            subject.permissions = list(permissions)
            subject.updated_at = utcnow()
            return self._copy(subject)

    def soft_delete_subject(self, subject_id: str, deleted_by: Optional[str] = None) -> bool:
        with self._data_lock:
            subject = self._live_subject(subject_id)
            if not subject:
                return False
            now = utcnow()
            subject.deleted_at = now
            subject.deleted_by = deleted_by
            subject.is_active = False
            subject.updated_at = now
            self._drop_refresh_tokens(subject_id)
            self._drop_one_time_tokens(self.reset_tokens, subject_id)
            self._drop_one_time_tokens(self.verification_tokens, subject_id)
            return True

    def change_password(self, subject_id: str, password_hash: str) -> bool:
        """Replace the hash and revoke every refresh token of the subject."""
        with self._data_lock:
            subject = self._live_subject(subject_id)
            if not subject:
                return False
            subject.password_hash = password_hash
            subject.updated_at = utcnow()
            self._drop_refresh_tokens(subject_id)
            return True

    # -- refresh tokens --------------------------------------------------

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", field="token")
            if not self._live_subject(token.subject_id):
                raise ConstraintViolation("unknown subject", field="subject_id")
            self.refresh_tokens[token.token] = token
            return token

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def rotate_refresh_token(
        self, old_token: str, replacement: RefreshToken, *, now: Optional[datetime] = None
    ) -> bool:
        """Swap ``old_token`` for ``replacement`` if it is still valid.

        Returns False (and inserts nothing) when the old token is unknown,
        expired, or belongs to a different subject than the replacement.
        """
        now = now or utcnow()
        with self._data_lock:
            record = self.refresh_tokens.get(old_token)
            if not record or record.subject_id != replacement.subject_id:
                return False
            del self.refresh_tokens[old_token]
            if as_utc(record.expires_at) <= now:
                return False
            self.refresh_tokens[replacement.token] = replacement
            return True

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token, None) is not None

    def _drop_refresh_tokens(self, subject_id: str) -> int:
        doomed = [t for t, rec in self.refresh_tokens.items() if rec.subject_id == subject_id]
        for token in doomed:
            del self.refresh_tokens[token]
        return len(doomed)

    @staticmethod
    def _drop_one_time_tokens(bucket: Dict[str, OneTimeToken], subject_id: str) -> int:
        doomed = [t for t, rec in bucket.items() if rec.subject_id == subject_id]
        for token in doomed:
            del bucket[token]
        return len(doomed)

    # -- password reset / email verification ------------------------------

    def create_reset_token(self, token: OneTimeToken) -> OneTimeToken:
        with self._data_lock:
            self.reset_tokens[token.token] = token
            return token

    def reset_password(
        self, token: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[str]:
        """Consume a reset token, store the new hash and revoke refresh tokens.

        Returns the subject id, or None if the token is unknown or expired.
        An expired token is deleted on the way out.
        """
        now = now or utcnow()
        with self._data_lock:
            record = self.reset_tokens.pop(token, None)
            if not record or as_utc(record.expires_at) <= now:
                return None
            subject = self._live_subject(record.subject_id)
            if not subject:
                return None
            subject.password_hash = password_hash
            subject.updated_at = now
            self._drop_one_time_tokens(self.reset_tokens, subject.id)
            self._drop_refresh_tokens(subject.id)
            return subject.id

    def create_verification_token(self, token: OneTimeToken) -> OneTimeToken:
        with self._data_lock:
            self.verification_tokens[token.token] = token
            return token

    def consume_verification_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Optional[str]:
        now = now or utcnow()
        with self._data_lock:
            record = self.verification_tokens.pop(token, None)
            if not record or as_utc(record.expires_at) <= now:
                return None
            subject = self._live_subject(record.subject_id)
            if not subject:
                return None
            if subject.email_verified_at is None:
                subject.email_verified_at = now
            subject.updated_at = now
            self._drop_one_time_tokens(self.verification_tokens, subject.id)
            return subject.id

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        removed = 0
        with self._data_lock:
            for bucket in (self.refresh_tokens, self.reset_tokens, self.verification_tokens):
                expired = [t for t, rec in bucket.items() if as_utc(rec.expires_at) <= now]
                for token in expired:
                    del bucket[token]
                removed += len(expired)
        if removed:
            self.logger.info("expired_tokens_purged", count=removed)
        return removed

    # -- security events -------------------------------------------------

    def append_security_event(self, event: SecurityEvent) -> None:
        with self._data_lock:
            self.security_events.append(event)

    def list_security_events(
        self,
        *,
        subject_id: Optional[str] = None,
        event: Optional[str] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            matches = [
                e
                for e in self.security_events
                if (subject_id is None or e.subject_id == subject_id)
                and (event is None or e.event == event)
            ]
        return list(reversed(matches))[:limit]

    def verify_connection(self) -> None:
        return None
