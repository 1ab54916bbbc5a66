"""Role, department and permission-string model.

Permissions are plain capability strings such as ``financial:read``. The
wildcard ``*`` grants everything. A subject's effective set is derived from
its role and department when it is created and stored with the subject, so
later edits to the maps below do not silently widen existing accounts.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, List, Optional, Sequence

WILDCARD = "*"


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"
    VIEWER = "viewer"


class Department(str, Enum):
    FINANCE = "finance"
    HR = "hr"
    ENGINEERING = "engineering"
    MANUFACTURING = "manufacturing"
    CONTROL = "control"
    SALES = "sales"
    IT = "it"
    QUALITY = "quality"


ADMIN_ROLES = frozenset({Role.SUPER_ADMIN.value, Role.ADMIN.value})

# Roles a client may pick for itself at registration
SELF_REGISTRATION_ROLES = frozenset({Role.EMPLOYEE.value, Role.VIEWER.value})

ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    Role.SUPER_ADMIN.value: (WILDCARD,),
    Role.ADMIN.value: (WILDCARD,),
    Role.MANAGER.value: ("read", "write"),
    Role.EMPLOYEE.value: ("read",),
    Role.VIEWER.value: ("read",),
}


def _crud(prefix: str) -> tuple[str, ...]:
    return (f"{prefix}:read", f"{prefix}:write", f"{prefix}:delete")


DEPARTMENT_PERMISSIONS: dict[str, tuple[str, ...]] = {
    Department.FINANCE.value: _crud("financial"),
    Department.HR.value: _crud("hr"),
    Department.ENGINEERING.value: _crud("engineering"),
    Department.MANUFACTURING.value: _crud("manufacturing"),
    Department.CONTROL.value: _crud("control"),
    Department.SALES.value: _crud("sales"),
    Department.IT.value: _crud("it"),
    Department.QUALITY.value: _crud("quality"),
}


def normalize_role(value: str) -> str:
    """Return the canonical role value; raises ValueError for unknown roles."""
    return Role(str(value).strip().lower()).value


def normalize_department(value: Optional[str]) -> Optional[str]:
    if value is None or not str(value).strip():
        return None
    return Department(str(value).strip().lower()).value


def resolve_permissions(role: str, department: Optional[str] = None) -> List[str]:
    """Union of the role and department permissions, in a stable order."""
    resolved: List[str] = []
    for perm in ROLE_PERMISSIONS.get(role, ()) + DEPARTMENT_PERMISSIONS.get(department or "", ()):
        if perm == WILDCARD:
            return [WILDCARD]
        if perm not in resolved:
            resolved.append(perm)
    return resolved


def has_permission(permissions: Iterable[str], required: str) -> bool:
    perms = set(permissions or ())
    return WILDCARD in perms or required in perms


def has_role(role: str, allowed: Sequence[str]) -> bool:
    return role in {str(r.value if isinstance(r, Role) else r) for r in allowed}


def is_admin(role: str) -> bool:
    return role in ADMIN_ROLES
