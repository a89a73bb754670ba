from __future__ import annotations

from pathlib import Path

import pytest

from crm_auth.auth.errors import (
    InsufficientPermissionError,
    RoleAlreadyExistsError,
    RoleInUseError,
    RoleNotFoundError,
    RoleProtectedError,
    ValidationFailedError,
)
from crm_auth.roles.models import CreateRoleRequest, PermissionMatrix, UpdateRoleRequest
from crm_auth.roles.service import RoleService
from tests.auth_fixtures import add_identity, build_stack


def _auditor(hierarchy: int = 45) -> CreateRoleRequest:
    return CreateRoleRequest(
        role_name="auditor",
        display_name="Auditor",
        description="Reads reports",
        hierarchy=hierarchy,
        permissions=PermissionMatrix.grant(("reports",), ("read",)),
    )


def test_default_roles_are_seeded_once(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)

    assert stack.roles.initialize_default_roles() == 0
    assert [policy.role_name for policy in stack.roles.list_roles()] == [
        "super_admin",
        "sales",
        "employee",
        "client",
    ]
    assert [policy.role_name for policy in stack.roles.list_roles(max_hierarchy=30)] == ["super_admin", "sales"]


def test_create_role_requires_strictly_lower_authority(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    sales = stack.resolver.resolve("sales")

    with pytest.raises(InsufficientPermissionError):
        stack.roles.create_role(_auditor(hierarchy=30), actor=sales, actor_id="u-sales")
    created = stack.roles.create_role(_auditor(), actor=sales, actor_id="u-sales")

    assert created.is_system_role is False
    assert created.created_by == "u-sales"
    assert stack.resolver.has_permission("auditor", "reports", "read")


def test_create_role_rejects_duplicate_name(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    admin = stack.resolver.resolve("super_admin")
    stack.roles.create_role(_auditor(), actor=admin, actor_id="admin")

    with pytest.raises(RoleAlreadyExistsError) as exc:
        stack.roles.create_role(_auditor(), actor=admin, actor_id="admin")

    assert exc.value.status_code == 409


def test_system_role_core_properties_are_protected(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    admin = stack.resolver.resolve("super_admin")

    with pytest.raises(RoleProtectedError) as exc:
        stack.roles.update_role("sales", UpdateRoleRequest(hierarchy=35), actor=admin, actor_id="admin")
    updated = stack.roles.update_role(
        "sales", UpdateRoleRequest(display_name="Sales Team"), actor=admin, actor_id="admin"
    )

    assert exc.value.status_code == 403
    assert updated.display_name == "Sales Team"
    assert updated.hierarchy == 30


def test_custom_role_cannot_be_renamed(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    admin = stack.resolver.resolve("super_admin")
    stack.roles.create_role(_auditor(), actor=admin, actor_id="admin")

    with pytest.raises(ValidationFailedError):
        stack.roles.update_role("auditor", UpdateRoleRequest(role_name="inspector"), actor=admin, actor_id="admin")


def test_update_role_invalidates_cached_permissions(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    admin = stack.resolver.resolve("super_admin")
    stack.roles.create_role(_auditor(), actor=admin, actor_id="admin")
    assert not stack.resolver.has_permission("auditor", "clients")

    stack.roles.update_role(
        "auditor",
        UpdateRoleRequest(permissions=PermissionMatrix.grant(("reports", "clients"), ("read",))),
        actor=admin,
        actor_id="admin",
    )

    assert stack.resolver.has_permission("auditor", "clients")


def test_update_role_outside_authority_is_forbidden(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    client = stack.resolver.resolve("client")

    with pytest.raises(InsufficientPermissionError):
        stack.roles.update_role("employee", UpdateRoleRequest(display_name="Staff"), actor=client, actor_id="c-1")


def test_delete_role_rules(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    admin = stack.resolver.resolve("super_admin")
    stack.roles.create_role(_auditor(), actor=admin, actor_id="admin")
    add_identity(stack.identities, user_id="u-audit", email="audit@crm.test", role="auditor")

    with pytest.raises(RoleProtectedError) as protected:
        stack.roles.delete_role("employee", actor=admin, actor_id="admin")
    with pytest.raises(RoleInUseError) as in_use:
        stack.roles.delete_role("auditor", actor=admin, actor_id="admin")

    assert protected.value.status_code == 400
    assert in_use.value.status_code == 400

    stack.identities.upsert(stack.identities.get("u-audit").model_copy(update={"role": "employee"}))
    stack.roles.delete_role("auditor", actor=admin, actor_id="admin")
    with pytest.raises(RoleNotFoundError):
        stack.roles.get_role("auditor")
    assert not stack.resolver.has_permission("auditor", "reports")


def test_validate_permissions_rejects_unknown_modules() -> None:
    with pytest.raises(ValidationFailedError) as exc:
        RoleService.validate_permissions({"modules": {"bogus": True}, "actions": {"read": True}})

    assert "bogus" in str(exc.value.detail)
    assert RoleService.validate_permissions({"modules": {"clients": True}}).modules == {"clients": True}


def test_bulk_assign_writes_matrix_and_clears_cache(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    add_identity(stack.identities, user_id="u-emp", email="emp@crm.test", role="employee")
    sales = stack.resolver.resolve("sales")
    stack.resolver.resolve("employee")
    assert len(stack.cache) == 2

    modified = stack.roles.bulk_assign_permissions(
        ["u-emp", "missing"],
        PermissionMatrix.grant(("dashboard", "support"), ("read",)),
        actor=sales,
        actor_id="u-sales",
    )

    assert modified == 1
    assert len(stack.cache) == 0
    identity = stack.identities.get("u-emp")
    assert stack.resolver.resolve_identity(identity).allows("support", "read")


def test_bulk_assign_refuses_identity_outside_authority(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    add_identity(stack.identities, user_id="u-admin", email="boss@crm.test", role="super_admin")

    with pytest.raises(InsufficientPermissionError):
        stack.roles.bulk_assign_permissions(
            ["u-admin"],
            PermissionMatrix.grant(("dashboard",), ("read",)),
            actor=stack.resolver.resolve("sales"),
            actor_id="u-sales",
        )
    assert stack.identities.get("u-admin").permissions is None


def test_statistics_count_roles_and_assignments(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    add_identity(stack.identities)
    stack.roles.create_role(_auditor(), actor=stack.resolver.resolve("super_admin"), actor_id="admin")

    stats = stack.roles.statistics()

    assert stats["total_roles"] == 5
    assert stats["system_roles"] == 4
    assert stats["custom_roles"] == 1
    assert stats["user_distribution"] == {"sales": 1}


def test_system_roles_cannot_be_deactivated(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    admin = stack.resolver.resolve("super_admin")

    with pytest.raises(RoleProtectedError):
        stack.roles.update_role("super_admin", UpdateRoleRequest(is_active=False), actor=admin, actor_id="admin")
    with pytest.raises(RoleProtectedError):
        stack.roles.update_role("sales", UpdateRoleRequest(is_active=False), actor=admin, actor_id="admin")

    assert stack.resolver.has_permission("super_admin", "settings", "delete")
    assert stack.roles.get_role("super_admin").is_active


def test_inactive_custom_role_can_be_reactivated(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    sales = stack.resolver.resolve("sales")
    stack.roles.create_role(_auditor(), actor=sales, actor_id="u-sales")

    stack.roles.update_role("auditor", UpdateRoleRequest(is_active=False), actor=sales, actor_id="u-sales")
    with pytest.raises(RoleNotFoundError):
        stack.roles.get_role("auditor")
    assert not stack.resolver.has_permission("auditor", "reports", "read")

    reactivated = stack.roles.update_role(
        "auditor", UpdateRoleRequest(is_active=True), actor=sales, actor_id="u-sales"
    )

    assert reactivated.is_active
    assert stack.resolver.has_permission("auditor", "reports", "read")


def test_outranks_is_strict_except_for_top_role(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    sales = stack.resolver.resolve("sales")
    admin = stack.resolver.resolve("super_admin")

    assert sales.outranks(40)
    assert not sales.outranks(30)
    assert not sales.outranks(1)
    assert admin.outranks(1)
