import pytest

from erpcore.service.permissions import (
    WILDCARD,
    Role,
    has_permission,
    has_role,
    is_admin,
    normalize_department,
    normalize_role,
    resolve_permissions,
)


class TestResolvePermissions:
    def test_admin_roles_get_wildcard_only(self):
        assert resolve_permissions("super_admin") == [WILDCARD]
        # Department grants add nothing on top of the wildcard
        assert resolve_permissions("admin", "finance") == [WILDCARD]

    def test_manager_in_hr(self):
        assert resolve_permissions("manager", "hr") == [
            "read",
            "write",
            "hr:read",
            "hr:write",
            "hr:delete",
        ]

    def test_viewer_without_department(self):
        assert resolve_permissions("viewer") == ["read"]

    def test_unknown_role_and_department_grant_nothing(self):
        assert resolve_permissions("intern", "marketing") == []


class TestChecks:
    def test_wildcard_grants_everything(self):
        assert has_permission(["*"], "financial:delete")

    def test_exact_match_required(self):
        assert has_permission(["read", "financial:read"], "financial:read")
        assert not has_permission(["financial:read"], "financial:write")
        assert not has_permission([], "read")
        assert not has_permission(None, "read")

    def test_has_role_accepts_enum_members(self):
        assert has_role("admin", [Role.ADMIN, Role.SUPER_ADMIN])
        assert has_role("manager", ["manager"])
        assert not has_role("employee", [Role.ADMIN])

    def test_is_admin(self):
        assert is_admin("super_admin")
        assert is_admin("admin")
        assert not is_admin("manager")


class TestNormalization:
    def test_role_is_case_insensitive(self):
        assert normalize_role(" Manager ") == "manager"

    def test_unknown_role_raises(self):
        with pytest.raises(ValueError):
            normalize_role("owner")

    def test_department(self):
        assert normalize_department("FINANCE") == "finance"
        assert normalize_department("") is None
        assert normalize_department(None) is None
        with pytest.raises(ValueError):
            normalize_department("legal")
