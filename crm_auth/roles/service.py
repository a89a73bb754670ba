"""Role administration: CRUD on policies and bulk permission assignment."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from pydantic import ValidationError

from crm_auth.auth.errors import (
    InsufficientPermissionError,
    RoleAlreadyExistsError,
    RoleInUseError,
    RoleNotFoundError,
    RoleProtectedError,
    ValidationFailedError,
)
from crm_auth.auth.repository import IdentityRepository
from crm_auth.roles.models import (
    CreateRoleRequest,
    PermissionMatrix,
    PermissionSet,
    RolePolicy,
    UpdateRoleRequest,
    default_role_policies,
)
from crm_auth.roles.repository import RoleRepository
from crm_auth.roles.resolver import PermissionResolver

LOGGER = logging.getLogger(__name__)


class RoleService:
    """Every policy mutation invalidates the permission cache before returning."""

    def __init__(
        self,
        repo: RoleRepository,
        identities: IdentityRepository,
        resolver: PermissionResolver,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repo = repo
        self._identities = identities
        self._resolver = resolver
        self._clock = clock

    def initialize_default_roles(self) -> int:
        """Seed missing system roles; existing policies are left untouched."""
        now = int(self._clock())
        created = 0
        for policy in default_role_policies(self._resolver.top_role):
            seeded = policy.model_copy(update={"created_by": "system", "created_at": now, "updated_at": now})
            if self._repo.insert(seeded):
                created += 1
        if created:
            self._resolver.invalidate()
            LOGGER.info("default_roles_seeded", extra={"reason": f"created={created}"})
        return created

    def list_roles(self, max_hierarchy: int | None = None) -> list[RolePolicy]:
        policies = self._repo.list()
        if max_hierarchy is not None:
            policies = [policy for policy in policies if policy.hierarchy <= max_hierarchy]
        return policies

    def get_role(self, role_name: str) -> RolePolicy:
        policy = self._repo.get(role_name)
        if policy is None or not policy.is_active:
            raise RoleNotFoundError(role_name)
        return policy

    def _require_rank_above(self, actor: PermissionSet, hierarchy: int) -> None:
        if not actor.outranks(hierarchy):
            raise InsufficientPermissionError("Cannot manage a role at or above your own level")

    def _require_can_manage(self, actor: PermissionSet, role_name: str) -> None:
        if not self._resolver.can_manage(actor.role_name, role_name):
            raise InsufficientPermissionError(f"Cannot manage role '{role_name}'")

    def create_role(self, request: CreateRoleRequest, *, actor: PermissionSet, actor_id: str) -> RolePolicy:
        self._require_rank_above(actor, request.hierarchy)
        now = int(self._clock())
        policy = RolePolicy(
            role_name=request.role_name,
            display_name=request.display_name,
            description=request.description,
            hierarchy=request.hierarchy,
            permissions=request.permissions,
            dashboard_route=request.dashboard_route,
            is_system_role=False,
            is_active=True,
            created_by=actor_id,
            updated_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        if not self._repo.insert(policy):
            raise RoleAlreadyExistsError(request.role_name)
        self._resolver.invalidate(policy.role_name)
        LOGGER.info("role_created", extra={"role": policy.role_name, "user_id": actor_id})
        return policy

    def update_role(
        self,
        role_name: str,
        request: UpdateRoleRequest,
        *,
        actor: PermissionSet,
        actor_id: str,
    ) -> RolePolicy:
        """Apply changes to a policy. Inactive custom policies can be reactivated here."""
        existing = self._repo.get(role_name)
        if existing is None:
            raise RoleNotFoundError(role_name)
        self._require_rank_above(actor, existing.hierarchy)

        changes = request.model_dump(exclude_none=True)
        if existing.is_system_role and (
            changes.get("role_name", role_name) != role_name
            or changes.get("hierarchy", existing.hierarchy) != existing.hierarchy
            or changes.get("is_active", existing.is_active) != existing.is_active
        ):
            raise RoleProtectedError("Cannot modify core properties of system roles")
        if changes.get("role_name", role_name) != role_name:
            raise ValidationFailedError("Role name cannot be changed")
        changes.pop("role_name", None)
        if "hierarchy" in changes:
            self._require_rank_above(actor, int(changes["hierarchy"]))

        changes.update({"updated_by": actor_id, "updated_at": int(self._clock())})
        updated = self._repo.update(role_name, changes)
        if updated is None:
            raise RoleNotFoundError(role_name)
        self._resolver.invalidate(role_name)
        LOGGER.info("role_updated", extra={"role": role_name, "user_id": actor_id})
        return updated

    def delete_role(self, role_name: str, *, actor: PermissionSet, actor_id: str) -> None:
        existing = self.get_role(role_name)
        if existing.is_system_role:
            raise RoleProtectedError("Cannot delete system roles", status_code=400)
        self._require_can_manage(actor, role_name)
        assigned = self._identities.count_by_role(role_name)
        if assigned:
            raise RoleInUseError(role_name, assigned)
        self._repo.delete(role_name)
        self._resolver.invalidate(role_name)
        LOGGER.info("role_deleted", extra={"role": role_name, "user_id": actor_id})

    def manageable_roles(self, actor: PermissionSet) -> list[RolePolicy]:
        return self._resolver.manageable_roles(actor.role_name)

    def statistics(self) -> dict[str, Any]:
        counts = self._repo.counts()
        return {
            "total_roles": counts["total"],
            "system_roles": counts["system"],
            "custom_roles": counts["custom"],
            "user_distribution": self._identities.role_distribution(),
        }

    @staticmethod
    def validate_permissions(payload: Any) -> PermissionMatrix:
        """Parse an untrusted permission matrix, rejecting unknown modules or actions."""
        try:
            return PermissionMatrix.model_validate(payload)
        except ValidationError as exc:
            errors = [str(error.get("msg", "")) for error in exc.errors()]
            raise ValidationFailedError("Invalid permissions structure", errors) from exc

    def bulk_assign_permissions(
        self,
        user_ids: list[str],
        permissions: PermissionMatrix,
        *,
        actor: PermissionSet,
        actor_id: str,
    ) -> int:
        """Write a matrix onto identities the actor may manage, then clear the whole cache."""
        for user_id in user_ids:
            identity = self._identities.get(user_id)
            if identity is None:
                continue
            self._require_can_manage(actor, identity.role)
        modified = self._identities.set_permissions(
            user_ids, permissions.model_dump(), int(self._clock())
        )
        self._resolver.invalidate()
        LOGGER.info("permissions_bulk_assigned", extra={"user_id": actor_id, "reason": f"modified={modified}"})
        return modified

    def clear_cache(self, role_name: str | None = None) -> None:
        self._resolver.invalidate(role_name)
