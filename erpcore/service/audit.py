"""Security event sink.

Every authentication and authorization decision worth investigating later is
written twice: as a structured log line on the ``security`` logger, and as an
append-only ``SecurityEvent`` row in the credential store. Losing the row
must never fail the request that produced it, so store errors are logged and
dropped here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from erpcore.logging import get_logger
from erpcore.storage.models import SecurityEvent

security_logger = get_logger("security")

FAILURE_EVENTS = frozenset(
    {
        "LOGIN_FAILURE",
        "TOKEN_REFRESH_FAILURE",
        "PASSWORD_RESET_FAILURE",
        "PASSWORD_CHANGE_FAILURE",
        "EMAIL_VERIFICATION_FAILURE",
        "AUTH_FAILURE",
        "AUTHORIZATION_FAILURE",
        "PERMISSION_FAILURE",
        "DEPARTMENT_ACCESS_FAILURE",
        "OWNERSHIP_FAILURE",
        "COMPANY_ACCESS_FAILURE",
        "AUTH_RATE_LIMIT_EXCEEDED",
    }
)


@dataclass(frozen=True)
class RequestMeta:
    """Where a request came from, as far as the audit trail cares."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None


class SecurityEventStore(Protocol):
    def append_security_event(self, event: SecurityEvent) -> None: ...


class AuditLog:
    def __init__(self, store: Optional[SecurityEventStore] = None) -> None:
        self.store = store

    def record(
        self,
        event: str,
        *,
        subject_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
        **detail: Any,
    ) -> SecurityEvent:
        meta = meta or RequestMeta()
        entry = SecurityEvent(
            event=event,
            subject_id=subject_id,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            path=meta.path,
            method=meta.method,
            detail={k: v for k, v in detail.items() if v is not None},
        )
        log = security_logger.warning if event in FAILURE_EVENTS else security_logger.info
        log(
            "security_event",
            event_kind=event,
            subject_id=subject_id,
            ip_address=meta.ip_address,
            path=meta.path,
            method=meta.method,
            **entry.detail,
        )
        if self.store is not None:
            try:
                self.store.append_security_event(entry)
            except Exception as exc:
                security_logger.error(
                    "security_event_persist_failed",
                    event_kind=event,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return entry
