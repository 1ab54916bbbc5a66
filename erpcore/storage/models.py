from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (older rows, tests) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Subject:
    id: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    role: str = "employee"
    department: Optional[str] = None
    company_id: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    position: Optional[str] = None
    employee_id: Optional[str] = None
    is_active: bool = True
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def can_authenticate(self) -> bool:
        return self.is_active and not self.is_deleted

    def to_profile(self) -> Dict:
        """Client-facing view; the password hash never leaves the service."""
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "role": self.role,
            "department": self.department,
            "permissions": list(self.permissions),
            "companyId": self.company_id,
            "position": self.position,
            "employeeId": self.employee_id,
            "isActive": self.is_active,
            "emailVerified": self.email_verified,
            "mfaEnabled": False,
            "lastLoginAt": self.last_login_at.isoformat() if self.last_login_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class RefreshToken:
    token: str
    subject_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        subject_id: str,
        ttl_minutes: int,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RefreshToken":
        now = utcnow()
        return cls(
            token=secrets.token_hex(40),
            subject_id=subject_id,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return as_utc(self.expires_at) <= (now or utcnow())


@dataclass
class OneTimeToken:
    """Single-use token for password reset or email verification."""

    token: str
    subject_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, subject_id: str, ttl_minutes: int) -> "OneTimeToken":
        now = utcnow()
        return cls(
            token=secrets.token_hex(32),
            subject_id=subject_id,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return as_utc(self.expires_at) <= (now or utcnow())


@dataclass
class Session:
    id: str
    subject_id: str
    email: str
    role: str
    department: Optional[str]
    company_id: Optional[str]
    permissions: List[str]
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False

    @classmethod
    def new(
        cls,
        subject: Subject,
        ttl_minutes: int,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        remember_me: bool = False,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=secrets.token_hex(32),
            subject_id=subject.id,
            email=subject.email,
            role=subject.role,
            department=subject.department,
            company_id=subject.company_id,
            permissions=list(subject.permissions),
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=remember_me,
        )

    def ttl_seconds(self) -> int:
        return max(1, int((as_utc(self.expires_at) - utcnow()).total_seconds()))

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "email": self.email,
            "role": self.role,
            "department": self.department,
            "company_id": self.company_id,
            "permissions": list(self.permissions),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "remember_me": self.remember_me,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Session":
        return cls(
            id=data["id"],
            subject_id=data["subject_id"],
            email=data.get("email", ""),
            role=data.get("role", "employee"),
            department=data.get("department"),
            company_id=data.get("company_id"),
            permissions=list(data.get("permissions") or []),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            remember_me=bool(data.get("remember_me", False)),
        )


@dataclass
class SecurityEvent:
    event: str
    subject_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    detail: Dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
