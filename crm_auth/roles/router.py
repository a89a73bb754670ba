"""Role administration API router."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from crm_auth.api.contracts import ApiErrorResponse, ApiResponse
from crm_auth.auth.dependencies import get_principal, require_permission
from crm_auth.auth.errors import InsufficientPermissionError
from crm_auth.auth.models import Principal
from crm_auth.roles.models import (
    BulkPermissionUpdateRequest,
    CheckPermissionRequest,
    ClearCacheRequest,
    CreateRoleRequest,
    PermissionSet,
    UpdateRoleRequest,
)
from crm_auth.roles.resolver import PermissionResolver
from crm_auth.roles.service import RoleService

_ERRORS = {
    400: {"model": ApiErrorResponse},
    401: {"model": ApiErrorResponse},
    403: {"model": ApiErrorResponse},
    404: {"model": ApiErrorResponse},
}


def _permissions_payload(resolved: PermissionSet) -> dict:
    return {
        "role": resolved.role_name,
        "hierarchy": resolved.hierarchy,
        "permissions": resolved.as_list(),
        "dashboard_route": resolved.dashboard_route,
    }


def create_roles_router(service: RoleService, resolver: PermissionResolver) -> APIRouter:
    """Build role listing, CRUD and permission routes under ``/api/roles``."""
    router = APIRouter(prefix="/api/roles", tags=["roles"])
    can_read = require_permission("user_management", "read")

    @router.get("", response_model=ApiResponse, responses=_ERRORS)
    def list_roles(
        max_hierarchy: int | None = Query(default=None, ge=1),
        _: Principal = Depends(can_read),
    ) -> ApiResponse:
        roles = service.list_roles(max_hierarchy)
        return ApiResponse(data={"roles": [role.model_dump() for role in roles]})

    @router.get("/manageable", response_model=ApiResponse, responses=_ERRORS)
    def manageable_roles(principal: Principal = Depends(can_read)) -> ApiResponse:
        roles = service.manageable_roles(principal.permissions)
        return ApiResponse(data={"roles": [role.model_dump() for role in roles]})

    @router.get("/statistics", response_model=ApiResponse, responses=_ERRORS)
    def statistics(_: Principal = Depends(can_read)) -> ApiResponse:
        return ApiResponse(data=service.statistics())

    @router.get("/can-manage/{target_role}", response_model=ApiResponse, responses=_ERRORS)
    def can_manage(target_role: str, principal: Principal = Depends(can_read)) -> ApiResponse:
        allowed = resolver.can_manage(principal.role, target_role)
        return ApiResponse(
            data={"manager_role": principal.role, "target_role": target_role, "can_manage": allowed}
        )

    @router.post("/check-permission", response_model=ApiResponse, responses=_ERRORS)
    def check_permission(
        req: CheckPermissionRequest,
        principal: Principal = Depends(get_principal),
    ) -> ApiResponse:
        """Check the caller's own permissions."""
        return ApiResponse(
            data={
                "role": principal.role,
                "module": req.module,
                "action": req.action,
                "has_permission": principal.permissions.allows(req.module, req.action),
            }
        )

    @router.get("/permissions/my", response_model=ApiResponse, responses=_ERRORS)
    def my_permissions(principal: Principal = Depends(get_principal)) -> ApiResponse:
        return ApiResponse(data=_permissions_payload(principal.permissions))

    @router.post(
        "/permissions/bulk-update",
        response_model=ApiResponse,
        responses=_ERRORS,
    )
    def bulk_update_permissions(
        req: BulkPermissionUpdateRequest,
        principal: Principal = Depends(require_permission("user_management", "update")),
    ) -> ApiResponse:
        modified = service.bulk_assign_permissions(
            req.user_ids,
            req.permissions,
            actor=principal.permissions,
            actor_id=principal.user_id,
        )
        return ApiResponse(message="Permissions updated", data={"modified_count": modified})

    @router.get("/permissions/{role_name}", response_model=ApiResponse, responses=_ERRORS)
    def role_permissions(role_name: str, principal: Principal = Depends(can_read)) -> ApiResponse:
        if not resolver.can_manage(principal.role, role_name):
            raise InsufficientPermissionError(f"Cannot view permissions of role '{role_name}'")
        return ApiResponse(data=_permissions_payload(resolver.resolve(role_name)))

    @router.post("/cache/clear", response_model=ApiResponse, responses=_ERRORS)
    def clear_cache(
        req: ClearCacheRequest,
        _: Principal = Depends(require_permission("settings", "update")),
    ) -> ApiResponse:
        service.clear_cache(req.role_name)
        return ApiResponse(message=f"Permission cache cleared for {req.role_name or 'all roles'}")

    @router.post("", response_model=ApiResponse, status_code=201, responses={**_ERRORS, 409: {"model": ApiErrorResponse}})
    def create_role(
        req: CreateRoleRequest,
        principal: Principal = Depends(require_permission("user_management", "create")),
    ) -> ApiResponse:
        role = service.create_role(req, actor=principal.permissions, actor_id=principal.user_id)
        return ApiResponse(message="Role created", data={"role": role.model_dump()})

    @router.get("/{role_name}", response_model=ApiResponse, responses=_ERRORS)
    def get_role(role_name: str, _: Principal = Depends(can_read)) -> ApiResponse:
        return ApiResponse(data={"role": service.get_role(role_name).model_dump()})

    @router.put("/{role_name}", response_model=ApiResponse, responses=_ERRORS)
    def update_role(
        role_name: str,
        req: UpdateRoleRequest,
        principal: Principal = Depends(require_permission("user_management", "update")),
    ) -> ApiResponse:
        role = service.update_role(role_name, req, actor=principal.permissions, actor_id=principal.user_id)
        return ApiResponse(message="Role updated", data={"role": role.model_dump()})

    @router.delete("/{role_name}", response_model=ApiResponse, responses=_ERRORS)
    def delete_role(
        role_name: str,
        principal: Principal = Depends(require_permission("user_management", "delete")),
    ) -> ApiResponse:
        service.delete_role(role_name, actor=principal.permissions, actor_id=principal.user_id)
        return ApiResponse(message="Role deleted")

    return router
