from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Path, Query

from erpcore.api.dependencies import (
    get_auth_context,
    optional_auth,
    rate_limited,
    request_meta,
    require_company_access,
    require_ownership,
    require_permission,
    require_role,
    runtime_dep,
)
from erpcore.api.schemas import (
    EmailRequest,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenRefreshRequest,
    UserStatusRequest,
)
from erpcore.service.audit import RequestMeta
from erpcore.service.guard import AuthContext
from erpcore.service.permissions import Role
from erpcore.service.runtime import Runtime

router = APIRouter(prefix="/v1")

_ADMIN_ROLES = (Role.SUPER_ADMIN.value, Role.ADMIN.value)


def _ok(data=None, message: Optional[str] = None) -> Envelope:
    return Envelope(success=True, data=data, message=message)


# -- authentication -----------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=Envelope,
    response_model_exclude_none=True,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(rate_limited("register"))],
)
async def register(
    body: RegisterRequest,
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    """Self-registration; only the employee and viewer roles may be requested."""
    data = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
        department=body.department,
        company_id=body.company_id,
        position=body.position,
        employee_id=body.employee_id,
        meta=meta,
    )
    return _ok(data, "User registered successfully")


@router.post(
    "/auth/login",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
    dependencies=[Depends(rate_limited("login"))],
)
async def login(
    body: LoginRequest,
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    """Exchange email and password for an access token, refresh token and session.

    Raises:
        401: for every credential failure, with the same message
        429: when the caller's IP exhausted its attempts
    """
    data = await runtime.auth.login(
        body.email, body.password, remember_me=body.remember_me, meta=meta
    )
    return _ok(data, "Login successful")


@router.post("/auth/logout", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = Body(None),
    ctx: Optional[AuthContext] = Depends(optional_auth),
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    body = body or LogoutRequest()
    await runtime.auth.logout(
        refresh_token=body.refresh_token,
        session_id=body.session_id,
        ctx=ctx,
        meta=meta,
    )
    return _ok(message="Logout successful")


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
    dependencies=[Depends(rate_limited("refresh"))],
)
async def refresh(
    body: TokenRefreshRequest,
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    data = await runtime.auth.refresh(body.refresh_token, meta=meta)
    return _ok(data, "Token refreshed successfully")


@router.post(
    "/auth/forgot-password",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
    dependencies=[Depends(rate_limited("forgot-password"))],
)
async def forgot_password(
    body: EmailRequest,
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    message = await runtime.auth.forgot_password(body.email, meta=meta)
    return _ok(message=message)


@router.post(
    "/auth/reset-password",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
    dependencies=[Depends(rate_limited("reset-password"))],
)
async def reset_password(
    body: PasswordResetConfirm,
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    await runtime.auth.reset_password(body.token, body.password, meta=meta)
    return _ok(message="Password reset successful")


@router.post(
    "/auth/change-password",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
    dependencies=[Depends(rate_limited("change-password"))],
)
async def change_password(
    body: PasswordChangeRequest,
    ctx: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    await runtime.auth.change_password(
        ctx, body.current_password, body.new_password, meta=meta
    )
    return _ok(message="Password changed successfully")


@router.get("/auth/me", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def me(
    ctx: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(runtime_dep),
):
    return _ok(runtime.auth.get_profile(ctx.subject_id))


@router.patch("/auth/profile", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest,
    ctx: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    profile = await runtime.auth.update_profile(
        ctx, first_name=body.first_name, last_name=body.last_name, meta=meta
    )
    return _ok(profile, "Profile updated successfully")


@router.post(
    "/auth/verify-email",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
    dependencies=[Depends(rate_limited("verify-email"))],
)
async def verify_email(
    body: EmailVerificationRequest,
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    await runtime.auth.verify_email(body.token, meta=meta)
    return _ok(message="Email verified successfully")


@router.post(
    "/auth/resend-verification",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
    dependencies=[Depends(rate_limited("resend-verification"))],
)
async def resend_verification(
    body: EmailRequest,
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    message = await runtime.auth.resend_verification(body.email, meta=meta)
    return _ok(message=message)


# -- users ------------------------------------------------------------------------


@router.get("/users/{userId}", response_model=Envelope, response_model_exclude_none=True, tags=["users"])
async def get_user(
    user_id: str = Path(..., alias="userId"),
    ctx: AuthContext = Depends(require_ownership("userId")),
    runtime: Runtime = Depends(runtime_dep),
):
    return _ok(runtime.auth.get_profile(user_id))


@router.get(
    "/companies/{companyId}/users",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["users"],
)
async def list_company_users(
    company_id: str = Path(..., alias="companyId"),
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(require_company_access("companyId")),
    runtime: Runtime = Depends(runtime_dep),
):
    return _ok(runtime.auth.list_subjects(company_id=company_id, limit=limit))


# -- administration --------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, response_model_exclude_none=True, tags=["admin"])
async def admin_list_users(
    company_id: Optional[str] = Query(None, alias="companyId"),
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(require_permission("users:read")),
    runtime: Runtime = Depends(runtime_dep),
):
    return _ok(runtime.auth.list_subjects(company_id=company_id, limit=limit))


@router.patch(
    "/admin/users/{userId}/status",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["admin"],
)
async def admin_set_user_status(
    body: UserStatusRequest,
    user_id: str = Path(..., alias="userId"),
    ctx: AuthContext = Depends(require_role(*_ADMIN_ROLES)),
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    profile = await runtime.auth.set_subject_status(ctx, user_id, body.is_active, meta=meta)
    message = "User activated" if body.is_active else "User deactivated"
    return _ok(profile, message)


@router.delete(
    "/admin/users/{userId}",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["admin"],
)
async def admin_delete_user(
    user_id: str = Path(..., alias="userId"),
    ctx: AuthContext = Depends(require_role(*_ADMIN_ROLES)),
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
):
    await runtime.auth.delete_subject(ctx, user_id, meta=meta)
    return _ok(message="User deleted")
