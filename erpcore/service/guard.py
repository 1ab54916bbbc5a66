from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Tuple

from erpcore.service.audit import AuditLog, RequestMeta
from erpcore.service.errors import AuthorizationError
from erpcore.service.permissions import has_permission, has_role, is_admin
from erpcore.storage.models import Subject


@dataclass(frozen=True)
class AuthContext:
    """Identity of an authenticated caller, built from the subject's current record."""

    subject_id: str
    email: str
    role: str
    department: Optional[str] = None
    company_id: Optional[str] = None
    permissions: Tuple[str, ...] = field(default_factory=tuple)
    session_id: Optional[str] = None

    @classmethod
    def from_subject(cls, subject: Subject, session_id: Optional[str] = None) -> "AuthContext":
        return cls(
            subject_id=subject.id,
            email=subject.email,
            role=subject.role,
            department=subject.department,
            company_id=subject.company_id,
            permissions=tuple(subject.permissions),
            session_id=session_id,
        )

    @property
    def is_admin(self) -> bool:
        return is_admin(self.role)


class AuthorizationGuard:
    """Role, permission, department, ownership and company checks.

    Every decision is audited: passes as ``AUTHORIZATION_SUCCESS`` tagged with
    the check, denials under their own event kind. Callers only ever see
    "Insufficient permissions"; what was required and what the caller had go
    to the audit trail.
    """

    def __init__(self, audit: AuditLog) -> None:
        self.audit = audit

    def _allow(
        self,
        check: str,
        ctx: AuthContext,
        meta: Optional[RequestMeta],
        **detail: Any,
    ) -> None:
        self.audit.record(
            "AUTHORIZATION_SUCCESS", subject_id=ctx.subject_id, meta=meta, check=check, **detail
        )

    def _deny(
        self,
        event: str,
        ctx: AuthContext,
        meta: Optional[RequestMeta],
        **detail: Any,
    ) -> AuthorizationError:
        self.audit.record(event, subject_id=ctx.subject_id, meta=meta, **detail)
        return AuthorizationError("Insufficient permissions")

    def require_role(
        self, ctx: AuthContext, roles: Sequence[str], *, meta: Optional[RequestMeta] = None
    ) -> None:
        required = [str(getattr(r, "value", r)) for r in roles]
        if not has_role(ctx.role, roles):
            raise self._deny(
                "AUTHORIZATION_FAILURE",
                ctx,
                meta,
                required_roles=required,
                actual_role=ctx.role,
            )
        self._allow("role", ctx, meta, required_roles=required)

    def require_permission(
        self, ctx: AuthContext, permission: str, *, meta: Optional[RequestMeta] = None
    ) -> None:
        if not has_permission(ctx.permissions, permission):
            raise self._deny(
                "PERMISSION_FAILURE",
                ctx,
                meta,
                required_permission=permission,
                actual_permissions=list(ctx.permissions),
            )
        self._allow("permission", ctx, meta, required_permission=permission)

    def require_department(
        self,
        ctx: AuthContext,
        departments: Sequence[str],
        *,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        allowed = {str(getattr(d, "value", d)) for d in departments}
        if ctx.department not in allowed:
            raise self._deny(
                "DEPARTMENT_ACCESS_FAILURE",
                ctx,
                meta,
                required_departments=sorted(allowed),
                actual_department=ctx.department,
            )
        self._allow("department", ctx, meta, required_departments=sorted(allowed))

    def require_ownership(
        self,
        ctx: AuthContext,
        owner_id: Any,
        *,
        field_name: str = "userId",
        meta: Optional[RequestMeta] = None,
    ) -> None:
        requested_id = None if owner_id is None else str(owner_id)
        if ctx.is_admin:
            self._allow(
                "ownership",
                ctx,
                meta,
                field=field_name,
                requested_id=requested_id,
                admin_override=True,
            )
            return
        if requested_id is None or requested_id != ctx.subject_id:
            raise self._deny(
                "OWNERSHIP_FAILURE",
                ctx,
                meta,
                field=field_name,
                requested_id=requested_id,
            )
        self._allow("ownership", ctx, meta, field=field_name, requested_id=requested_id)

    def require_company_access(
        self,
        ctx: AuthContext,
        company_id: Any,
        *,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        if company_id is None or ctx.company_id is None or str(company_id) != ctx.company_id:
            raise self._deny(
                "COMPANY_ACCESS_FAILURE",
                ctx,
                meta,
                requested_company_id=None if company_id is None else str(company_id),
                actual_company_id=ctx.company_id,
            )
        self._allow("company", ctx, meta, requested_company_id=ctx.company_id)
