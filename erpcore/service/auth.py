from __future__ import annotations

import asyncio
import unicodedata
import uuid
from typing import Any, Dict, List, Optional, Protocol

from erpcore.config import Settings
from erpcore.logging import get_logger
from erpcore.service.audit import AuditLog, RequestMeta
from erpcore.service.email import EmailService
from erpcore.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    ExpiredTokenError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from erpcore.service.guard import AuthContext
from erpcore.service.passwords import PasswordService, enforce_password_policy
from erpcore.service.permissions import (
    SELF_REGISTRATION_ROLES,
    normalize_department,
    normalize_role,
    resolve_permissions,
)
from erpcore.service.sessions import SessionService
from erpcore.service.tokens import TokenIssuer
from erpcore.storage.errors import ConstraintViolation
from erpcore.storage.models import OneTimeToken, RefreshToken, SecurityEvent, Subject

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent"
RESEND_VERIFICATION_MESSAGE = (
    "If an account with that email exists and is not verified, a verification email has been sent"
)


class CredentialStore(Protocol):
    def create_subject(self, subject: Subject) -> Subject: ...

    def get_subject(self, subject_id: str) -> Optional[Subject]: ...

    def get_subject_by_email(self, email: str) -> Optional[Subject]: ...

    def list_subjects(
        self, *, company_id: Optional[str] = None, limit: int = 100
    ) -> List[Subject]: ...

    def record_login(self, subject_id: str) -> None: ...

    def set_subject_active(self, subject_id: str, is_active: bool) -> Optional[Subject]: ...

    def update_subject_profile(
        self,
        subject_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Optional[Subject]: ...

    def soft_delete_subject(self, subject_id: str, deleted_by: Optional[str] = None) -> bool: ...

    def change_password(self, subject_id: str, password_hash: str) -> bool: ...

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(self, old_token: str, replacement: RefreshToken) -> bool: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def create_reset_token(self, token: OneTimeToken) -> OneTimeToken: ...

    def reset_password(self, token: str, password_hash: str) -> Optional[str]: ...

    def create_verification_token(self, token: OneTimeToken) -> OneTimeToken: ...

    def consume_verification_token(self, token: str) -> Optional[str]: ...

    def append_security_event(self, event: SecurityEvent) -> None: ...


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", email or "").strip().lower()


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Return the token of an ``Authorization: Bearer <token>`` header.

    Raises AuthenticationError when the header is missing or malformed.
    """
    if not authorization:
        raise AuthenticationError("Access token required")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Invalid authorization header")
    return parts[1]


class AuthService:
    """Credential checks, token lifecycle, password flows and account admin."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        passwords: PasswordService,
        tokens: TokenIssuer,
        sessions: SessionService,
        audit: AuditLog,
        email: EmailService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.tokens = tokens
        self.sessions = sessions
        self.audit = audit
        self.email = email
        self.logger = logger

    # -- registration and login ----------------------------------------------

    async def register(
        self,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: Optional[str] = None,
        department: Optional[str] = None,
        company_id: Optional[str] = None,
        position: Optional[str] = None,
        employee_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Dict[str, Any]:
        """Create an active subject and sign it in.

        Raises ValidationError (policy, role, department), ConflictError
        (email taken) or AuthorizationError (registration disabled).
        """
        if not self.settings.allow_registration:
            raise AuthorizationError("Registration is disabled")
        enforce_password_policy(password)
        try:
            role_value = normalize_role(role or "employee")
        except ValueError:
            raise ValidationError("Invalid role", detail={"field": "role"}) from None
        if role_value not in SELF_REGISTRATION_ROLES:
            raise ValidationError(
                "Role cannot be self-assigned",
                detail={"field": "role", "allowed": sorted(SELF_REGISTRATION_ROLES)},
            )
        try:
            department_value = normalize_department(department)
        except ValueError:
            raise ValidationError("Invalid department", detail={"field": "department"}) from None

        email = normalize_email(email)
        if self.store.get_subject_by_email(email):
            raise ConflictError("User with this email already exists", detail={"field": "email"})
        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            subject = self.store.create_subject(
                Subject(
                    id=str(uuid.uuid4()),
                    email=email,
                    password_hash=password_hash,
                    first_name=first_name.strip(),
                    last_name=last_name.strip(),
                    role=role_value,
                    department=department_value,
                    company_id=company_id,
                    permissions=resolve_permissions(role_value, department_value),
                    position=position,
                    employee_id=employee_id,
                )
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration of the same address
            raise ConflictError(
                "User with this email already exists", detail={"field": exc.field or "email"}
            ) from exc
        self.audit.record("REGISTER", subject_id=subject.id, meta=meta, role=subject.role)
        await self._send_verification(subject)
        return await self._sign_in(subject, remember_me=False, meta=meta)

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        meta: Optional[RequestMeta] = None,
    ) -> Dict[str, Any]:
        """Raises AuthenticationError("Invalid credentials") for every failure."""
        email = normalize_email(email)
        subject = self.store.get_subject_by_email(email) if email else None
        password_ok = await asyncio.to_thread(
            self.passwords.verify, subject.password_hash if subject else None, password or ""
        )
        reason = None
        if subject is None:
            reason = "user_not_found"
        elif not subject.can_authenticate:
            reason = "account_inactive"
        elif not password_ok:
            reason = "invalid_password"
        elif self.settings.require_email_verification and not subject.email_verified:
            reason = "email_not_verified"
        if reason:
            self.audit.record(
                "LOGIN_FAILURE",
                subject_id=subject.id if subject else None,
                meta=meta,
                reason=reason,
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        self.store.record_login(subject.id)
        refreshed = self.store.get_subject(subject.id) or subject
        result = await self._sign_in(refreshed, remember_me=remember_me, meta=meta)
        self.audit.record(
            "LOGIN_SUCCESS", subject_id=subject.id, meta=meta, remember_me=remember_me
        )
        return result

    async def _sign_in(
        self, subject: Subject, *, remember_me: bool, meta: Optional[RequestMeta]
    ) -> Dict[str, Any]:
        meta = meta or RequestMeta()
        session = await self.sessions.create(
            subject,
            remember_me=remember_me,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        access_token, expires_in = self.tokens.issue_access_token(
            subject, session_id=session.id, remember_me=remember_me
        )
        refresh_token = self.tokens.issue_refresh_token(
            subject.id, ip_address=meta.ip_address, user_agent=meta.user_agent
        )
        return {
            "user": subject.to_profile(),
            "token": access_token,
            "refreshToken": refresh_token,
            "expiresIn": expires_in,
            "sessionId": session.id,
        }

    async def logout(
        self,
        *,
        refresh_token: Optional[str] = None,
        session_id: Optional[str] = None,
        ctx: Optional[AuthContext] = None,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        """Idempotent: unknown tokens and sessions are ignored.

        An authenticated caller can only end its own sessions. Without a valid
        access token the session record names the subject for the audit trail.
        """
        if refresh_token:
            self.store.delete_refresh_token(refresh_token)
        sid = session_id or (ctx.session_id if ctx else None)
        session = await self.sessions.get(sid) if sid else None
        if session and (ctx is None or session.subject_id == ctx.subject_id):
            await self.sessions.delete(sid)
        subject_id = ctx.subject_id if ctx else (session.subject_id if session else None)
        self.audit.record("LOGOUT", subject_id=subject_id, meta=meta)

    async def refresh(
        self, refresh_token: str, *, meta: Optional[RequestMeta] = None
    ) -> Dict[str, Any]:
        """Rotate a refresh token; raises InvalidTokenError when it is unusable."""
        meta = meta or RequestMeta()
        try:
            pair = self.tokens.rotate_refresh_token(
                refresh_token, ip_address=meta.ip_address, user_agent=meta.user_agent
            )
        except InvalidTokenError:
            self.audit.record("TOKEN_REFRESH_FAILURE", meta=meta, reason="invalid_or_expired")
            raise
        self.audit.record("TOKEN_REFRESHED", subject_id=pair.subject_id, meta=meta)
        return {
            "token": pair.access_token,
            "refreshToken": pair.refresh_token,
            "expiresIn": pair.expires_in,
        }

    # -- request authentication ------------------------------------------------

    async def authenticate(
        self, authorization: Optional[str], *, meta: Optional[RequestMeta] = None
    ) -> AuthContext:
        """Resolve a bearer header to the caller's current identity.

        Raises AuthenticationError (or its token subclasses).
        """
        try:
            token = extract_bearer_token(authorization)
        except AuthenticationError:
            self.audit.record("AUTH_FAILURE", meta=meta, reason="missing_or_malformed_header")
            raise
        try:
            claims = self.tokens.verify_access_token(token)
        except ExpiredTokenError:
            self.audit.record(
                "AUTH_FAILURE",
                subject_id=self.tokens.peek_subject_id(token),
                meta=meta,
                reason="token_expired",
            )
            raise
        except InvalidTokenError:
            self.audit.record(
                "AUTH_FAILURE",
                subject_id=self.tokens.peek_subject_id(token),
                meta=meta,
                reason="invalid_token",
            )
            raise
        # The token may outlive a deactivation or role change: trust the store
        subject = self.store.get_subject(claims["sub"])
        if not subject or not subject.can_authenticate:
            self.audit.record(
                "AUTH_FAILURE", subject_id=claims["sub"], meta=meta, reason="subject_unavailable"
            )
            raise AuthenticationError("User not found or inactive")
        ctx = AuthContext.from_subject(subject, session_id=claims.get("sid"))
        self.audit.record("AUTH_SUCCESS", subject_id=subject.id, meta=meta)
        return ctx

    async def authenticate_optional(
        self, authorization: Optional[str], *, meta: Optional[RequestMeta] = None
    ) -> Optional[AuthContext]:
        if not authorization:
            return None
        try:
            return await self.authenticate(authorization, meta=meta)
        except AuthenticationError:
            return None

    # -- password reset / change -------------------------------------------------

    async def forgot_password(self, email: str, *, meta: Optional[RequestMeta] = None) -> str:
        """Always returns the same message so existence is not disclosed."""
        subject = self.store.get_subject_by_email(normalize_email(email))
        if subject and subject.can_authenticate:
            record = self.store.create_reset_token(
                OneTimeToken.new(subject.id, self.settings.reset_token_ttl_minutes)
            )
            await asyncio.to_thread(self.email.send_password_reset, subject.email, record.token)
            self.audit.record("PASSWORD_RESET_REQUESTED", subject_id=subject.id, meta=meta)
        else:
            self.audit.record(
                "PASSWORD_RESET_REQUESTED", meta=meta, outcome="no_eligible_account"
            )
        return FORGOT_PASSWORD_MESSAGE

    async def reset_password(
        self, token: str, password: str, *, meta: Optional[RequestMeta] = None
    ) -> None:
        """Raises ValidationError (policy) or InvalidTokenError (token unusable)."""
        enforce_password_policy(password)
        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        subject_id = self.store.reset_password(token, password_hash) if token else None
        if not subject_id:
            self.audit.record("PASSWORD_RESET_FAILURE", meta=meta, reason="invalid_or_expired")
            raise InvalidTokenError("Invalid or expired reset token")
        await self.sessions.delete_for_subject(subject_id)
        self.audit.record("PASSWORD_RESET", subject_id=subject_id, meta=meta)

    async def change_password(
        self,
        ctx: AuthContext,
        current_password: str,
        new_password: str,
        *,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        """Raises ValidationError (policy) or AuthenticationError (wrong current password)."""
        enforce_password_policy(new_password)
        subject = self.store.get_subject(ctx.subject_id)
        if not subject:
            raise AuthenticationError("User not found or inactive")
        ok = await asyncio.to_thread(
            self.passwords.verify, subject.password_hash, current_password or ""
        )
        if not ok:
            self.audit.record(
                "PASSWORD_CHANGE_FAILURE", subject_id=subject.id, meta=meta, reason="invalid_password"
            )
            raise AuthenticationError("Current password is incorrect")
        password_hash = await asyncio.to_thread(self.passwords.hash, new_password)
        if not self.store.change_password(subject.id, password_hash):
            raise AuthenticationError("User not found or inactive")
        await self.sessions.delete_for_subject(subject.id)
        self.audit.record("PASSWORD_CHANGED", subject_id=subject.id, meta=meta)

    # -- email verification --------------------------------------------------------

    async def _send_verification(self, subject: Subject) -> None:
        record = self.store.create_verification_token(
            OneTimeToken.new(subject.id, self.settings.verification_token_ttl_minutes)
        )
        await asyncio.to_thread(self.email.send_email_verification, subject.email, record.token)

    async def verify_email(self, token: str, *, meta: Optional[RequestMeta] = None) -> None:
        """Raises InvalidTokenError when the token is unknown, used or expired."""
        subject_id = self.store.consume_verification_token(token) if token else None
        if not subject_id:
            self.audit.record("EMAIL_VERIFICATION_FAILURE", meta=meta, reason="invalid_or_expired")
            raise InvalidTokenError("Invalid or expired verification token")
        self.audit.record("EMAIL_VERIFIED", subject_id=subject_id, meta=meta)

    async def resend_verification(
        self, email: str, *, meta: Optional[RequestMeta] = None
    ) -> str:
        subject = self.store.get_subject_by_email(normalize_email(email))
        if subject and subject.can_authenticate and not subject.email_verified:
            await self._send_verification(subject)
            self.audit.record("VERIFICATION_EMAIL_RESENT", subject_id=subject.id, meta=meta)
        return RESEND_VERIFICATION_MESSAGE

    # -- profiles and administration ----------------------------------------------

    def get_profile(self, subject_id: str) -> Dict[str, Any]:
        subject = self.store.get_subject(subject_id)
        if not subject:
            raise NotFoundError("User not found")
        return subject.to_profile()

    def list_subjects(
        self, *, company_id: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        return [s.to_profile() for s in self.store.list_subjects(company_id=company_id, limit=limit)]

    async def update_profile(
        self,
        ctx: AuthContext,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Dict[str, Any]:
        """Self-service name change; raises ValidationError when nothing is given."""
        changes: Dict[str, str] = {}
        for field_name, value in (("first_name", first_name), ("last_name", last_name)):
            if value is None:
                continue
            value = value.strip()
            if not value:
                raise ValidationError("Name must not be blank", detail={"field": field_name})
            changes[field_name] = value
        if not changes:
            raise ValidationError("No profile fields to update")
        subject = self.store.update_subject_profile(ctx.subject_id, **changes)
        if not subject:
            raise AuthenticationError("User not found or inactive")
        self.audit.record("PROFILE_UPDATED", subject_id=subject.id, meta=meta, fields=sorted(changes))
        return subject.to_profile()

    async def set_subject_status(
        self,
        actor: AuthContext,
        subject_id: str,
        is_active: bool,
        *,
        meta: Optional[RequestMeta] = None,
    ) -> Dict[str, Any]:
        """Raises ValidationError (own account) or NotFoundError."""
        if subject_id == actor.subject_id and not is_active:
            raise ValidationError("Cannot deactivate your own account")
        subject = self.store.set_subject_active(subject_id, is_active)
        if not subject:
            raise NotFoundError("User not found")
        if not is_active:
            await self.sessions.delete_for_subject(subject_id)
        self.audit.record(
            "USER_STATUS_CHANGED",
            subject_id=actor.subject_id,
            meta=meta,
            target_id=subject_id,
            is_active=is_active,
        )
        return subject.to_profile()

    async def delete_subject(
        self, actor: AuthContext, subject_id: str, *, meta: Optional[RequestMeta] = None
    ) -> None:
        """Soft delete; raises ValidationError (own account) or NotFoundError."""
        if subject_id == actor.subject_id:
            raise ValidationError("Cannot delete your own account")
        if not self.store.soft_delete_subject(subject_id, deleted_by=actor.subject_id):
            raise NotFoundError("User not found")
        await self.sessions.delete_for_subject(subject_id)
        self.audit.record(
            "USER_DELETED", subject_id=actor.subject_id, meta=meta, target_id=subject_id
        )
