"""Role policy models and the seeded system role matrices."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, field_validator

MODULES: tuple[str, ...] = (
    "dashboard",
    "clients",
    "projects",
    "employees",
    "attendance",
    "payments",
    "procurement",
    "invoices",
    "amc",
    "support",
    "accounting",
    "activity_logs",
    "user_management",
    "settings",
    "reports",
)

ACTIONS: tuple[str, ...] = (
    "create",
    "read",
    "update",
    "delete",
    "export",
    "import",
    "approve",
    "reject",
)


class PermissionMatrix(BaseModel):
    """Module and action grants; anything absent is denied."""

    modules: dict[str, bool] = Field(default_factory=dict)
    actions: dict[str, bool] = Field(default_factory=dict)

    @field_validator("modules")
    @classmethod
    def _known_modules(cls, value: dict[str, bool]) -> dict[str, bool]:
        unknown = sorted(set(value) - set(MODULES))
        if unknown:
            raise ValueError(f"Invalid module: {', '.join(unknown)}")
        return value

    @field_validator("actions")
    @classmethod
    def _known_actions(cls, value: dict[str, bool]) -> dict[str, bool]:
        unknown = sorted(set(value) - set(ACTIONS))
        if unknown:
            raise ValueError(f"Invalid action: {', '.join(unknown)}")
        return value

    @classmethod
    def grant(cls, modules: tuple[str, ...] | list[str], actions: tuple[str, ...] | list[str]) -> "PermissionMatrix":
        return cls(
            modules={name: name in modules for name in MODULES},
            actions={name: name in actions for name in ACTIONS},
        )


class RolePolicy(BaseModel):
    """Persisted role definition."""

    role_name: str
    display_name: str
    description: str = ""
    hierarchy: int = Field(ge=1)
    permissions: PermissionMatrix = Field(default_factory=PermissionMatrix)
    dashboard_route: str = "/dashboard"
    is_system_role: bool = False
    is_active: bool = True
    created_by: str | None = None
    updated_by: str | None = None
    created_at: int = 0
    updated_at: int = 0


@dataclass(frozen=True)
class PermissionSet:
    """Resolved, read-only view of what a role may do.

    The top role short-circuits every module and action check here, so
    callers never special-case it.
    """

    role_name: str
    hierarchy: int
    modules: frozenset[str]
    actions: frozenset[str]
    dashboard_route: str = "/dashboard"
    is_top_role: bool = False

    @classmethod
    def from_policy(
        cls,
        policy: RolePolicy,
        *,
        is_top_role: bool,
        matrix: PermissionMatrix | None = None,
    ) -> "PermissionSet":
        source = matrix or policy.permissions
        return cls(
            role_name=policy.role_name,
            hierarchy=policy.hierarchy,
            modules=frozenset(name for name, allowed in source.modules.items() if allowed),
            actions=frozenset(name for name, allowed in source.actions.items() if allowed),
            dashboard_route=policy.dashboard_route,
            is_top_role=is_top_role,
        )

    def allows(self, module: str, action: str | None = None) -> bool:
        if self.is_top_role:
            return True
        if module not in self.modules:
            return False
        return action is None or action in self.actions

    def outranks(self, hierarchy: int) -> bool:
        """Whether this role may manage a role ranked at ``hierarchy``."""
        if self.is_top_role:
            return True
        return self.hierarchy < hierarchy

    def as_claims(self) -> dict[str, Any]:
        """Snapshot embedded in access tokens."""
        return {
            "role": self.role_name,
            "hierarchy": self.hierarchy,
            "modules": sorted(self.modules),
            "actions": sorted(self.actions),
            "is_top_role": self.is_top_role,
        }

    def as_list(self) -> list[str]:
        if self.is_top_role:
            return ["*:*"]
        return [f"{module}:read" for module in sorted(self.modules)] + [
            f"*:{action}" for action in sorted(self.actions)
        ]


class CreateRoleRequest(BaseModel):
    role_name: str = Field(min_length=2, max_length=64, pattern=r"^[a-z][a-z0-9_]*$")
    display_name: str = Field(min_length=1, max_length=128)
    description: str = Field(min_length=1, max_length=512)
    hierarchy: int = Field(default=50, ge=1, le=1000)
    permissions: PermissionMatrix = Field(default_factory=PermissionMatrix)
    dashboard_route: str = "/dashboard"


class UpdateRoleRequest(BaseModel):
    role_name: str | None = None
    display_name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=512)
    hierarchy: int | None = Field(default=None, ge=1, le=1000)
    permissions: PermissionMatrix | None = None
    dashboard_route: str | None = None
    is_active: bool | None = None


class CheckPermissionRequest(BaseModel):
    module: str = Field(min_length=1)
    action: str | None = None


class BulkPermissionUpdateRequest(BaseModel):
    user_ids: list[str] = Field(min_length=1)
    permissions: PermissionMatrix


class ClearCacheRequest(BaseModel):
    role_name: str | None = None


_SALES_MODULES = ("dashboard", "clients", "projects", "invoices", "reports")
_EMPLOYEE_MODULES = ("dashboard", "attendance")
_CLIENT_MODULES = ("dashboard", "projects", "invoices", "support")


def default_role_policies(top_role: str) -> list[RolePolicy]:
    """System roles seeded on first start."""
    return [
        RolePolicy(
            role_name=top_role,
            display_name="Super Administrator",
            description="Full system access with all permissions",
            hierarchy=1,
            permissions=PermissionMatrix.grant(MODULES, ACTIONS),
            is_system_role=True,
        ),
        RolePolicy(
            role_name="sales",
            display_name="Sales Representative",
            description="Sales-focused access with client and project management",
            hierarchy=30,
            permissions=PermissionMatrix.grant(_SALES_MODULES, ("create", "read", "update", "export")),
            is_system_role=True,
        ),
        RolePolicy(
            role_name="employee",
            display_name="Employee",
            description="Basic employee access with limited permissions",
            hierarchy=40,
            permissions=PermissionMatrix.grant(_EMPLOYEE_MODULES, ("read",)),
            is_system_role=True,
        ),
        RolePolicy(
            role_name="client",
            display_name="Client",
            description="External client access with limited project visibility",
            hierarchy=50,
            permissions=PermissionMatrix.grant(_CLIENT_MODULES, ("read",)),
            is_system_role=True,
        ),
    ]
