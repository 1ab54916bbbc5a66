"""FastAPI dependencies: runtime injection, caller identity and access guards.

Handlers receive an explicit ``AuthContext`` instead of reading identity off
the request. Guard factories return dependencies that resolve to that same
context once the check has passed, e.g.::

    @router.get("/admin/users")
    async def list_users(ctx: AuthContext = Depends(require_permission("users:read"))):
        ...
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import Depends, Header, Request

from erpcore.service.audit import RequestMeta
from erpcore.service.guard import AuthContext
from erpcore.service.runtime import Runtime, get_runtime


def runtime_dep(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    return runtime if runtime is not None else get_runtime()


def request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        path=request.url.path,
        method=request.method,
    )


async def get_auth_context(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
) -> AuthContext:
    return await runtime.auth.authenticate(authorization, meta=meta)


async def optional_auth(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(runtime_dep),
    meta: RequestMeta = Depends(request_meta),
) -> Optional[AuthContext]:
    """Caller identity when a valid token is present, otherwise None."""
    return await runtime.auth.authenticate_optional(authorization, meta=meta)


async def _request_value(request: Request, field: str) -> Any:
    """Look ``field`` up in the path parameters, then in a JSON body."""
    if field in request.path_params:
        return request.path_params[field]
    if request.method in {"GET", "HEAD", "DELETE"}:
        return None
    try:
        body = await request.json()
    except ValueError:
        return None
    return body.get(field) if isinstance(body, dict) else None


def rate_limited(scope: str):
    """Count one attempt against ``scope`` for the caller's IP."""

    async def dependency(
        runtime: Runtime = Depends(runtime_dep),
        meta: RequestMeta = Depends(request_meta),
    ) -> None:
        await runtime.rate_limiter.check(scope, meta.ip_address, meta=meta)

    return dependency


def require_role(*roles: str):
    async def dependency(
        ctx: AuthContext = Depends(get_auth_context),
        runtime: Runtime = Depends(runtime_dep),
        meta: RequestMeta = Depends(request_meta),
    ) -> AuthContext:
        runtime.guard.require_role(ctx, roles, meta=meta)
        return ctx

    return dependency


def require_permission(permission: str):
    async def dependency(
        ctx: AuthContext = Depends(get_auth_context),
        runtime: Runtime = Depends(runtime_dep),
        meta: RequestMeta = Depends(request_meta),
    ) -> AuthContext:
        runtime.guard.require_permission(ctx, permission, meta=meta)
        return ctx

    return dependency


def require_department(*departments: str):
    async def dependency(
        ctx: AuthContext = Depends(get_auth_context),
        runtime: Runtime = Depends(runtime_dep),
        meta: RequestMeta = Depends(request_meta),
    ) -> AuthContext:
        runtime.guard.require_department(ctx, departments, meta=meta)
        return ctx

    return dependency


def require_ownership(field: str = "userId"):
    async def dependency(
        request: Request,
        ctx: AuthContext = Depends(get_auth_context),
        runtime: Runtime = Depends(runtime_dep),
        meta: RequestMeta = Depends(request_meta),
    ) -> AuthContext:
        owner_id = await _request_value(request, field)
        runtime.guard.require_ownership(ctx, owner_id, field_name=field, meta=meta)
        return ctx

    return dependency


def require_company_access(field: str = "companyId"):
    async def dependency(
        request: Request,
        ctx: AuthContext = Depends(get_auth_context),
        runtime: Runtime = Depends(runtime_dep),
        meta: RequestMeta = Depends(request_meta),
    ) -> AuthContext:
        company_id = await _request_value(request, field)
        runtime.guard.require_company_access(ctx, company_id, meta=meta)
        return ctx

    return dependency
