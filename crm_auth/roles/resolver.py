"""Role-based permission resolution."""

from __future__ import annotations

import logging

from crm_auth.auth.errors import RoleNotFoundError
from crm_auth.auth.models import Identity
from crm_auth.roles.cache import PermissionCache
from crm_auth.roles.models import PermissionMatrix, PermissionSet, RolePolicy
from crm_auth.roles.repository import RoleRepository

LOGGER = logging.getLogger(__name__)


class PermissionResolver:
    """Resolve roles into permission sets and answer management questions.

    Hierarchy rank is the only authority: a lower number manages every
    strictly higher one, and ``top_role`` manages everything.
    """

    def __init__(self, repo: RoleRepository, cache: PermissionCache, *, top_role: str) -> None:
        self._repo = repo
        self._cache = cache
        self._top_role = top_role

    @property
    def top_role(self) -> str:
        return self._top_role

    def _active_policy(self, role_name: str) -> RolePolicy | None:
        policy = self._repo.get(role_name)
        if policy is None or not policy.is_active:
            return None
        return policy

    def resolve(self, role_name: str) -> PermissionSet:
        cached = self._cache.get(role_name)
        if cached is not None:
            return cached
        policy = self._active_policy(role_name)
        if policy is None:
            raise RoleNotFoundError(role_name)
        resolved = PermissionSet.from_policy(policy, is_top_role=role_name == self._top_role)
        self._cache.set(role_name, resolved)
        return resolved

    def resolve_identity(self, identity: Identity) -> PermissionSet:
        """Role permissions with the identity's bulk-assigned matrix laid over them."""
        base = self.resolve(identity.role)
        if not identity.permissions or base.is_top_role:
            return base
        matrix = PermissionMatrix.model_validate(identity.permissions)
        policy = self._active_policy(identity.role)
        if policy is None:
            raise RoleNotFoundError(identity.role)
        return PermissionSet.from_policy(policy, is_top_role=False, matrix=matrix)

    def has_permission(self, role_name: str, module: str, action: str | None = None) -> bool:
        try:
            resolved = self.resolve(role_name)
        except RoleNotFoundError:
            return False
        return resolved.allows(module, action)

    def can_manage(self, manager_role: str, target_role: str) -> bool:
        if manager_role == self._top_role:
            return True
        try:
            manager = self.resolve(manager_role)
            target = self.resolve(target_role)
        except RoleNotFoundError:
            return False
        return manager.hierarchy < target.hierarchy

    def manageable_roles(self, role_name: str) -> list[RolePolicy]:
        try:
            manager = self.resolve(role_name)
        except RoleNotFoundError:
            return []
        return [policy for policy in self._repo.list() if policy.hierarchy > manager.hierarchy]

    def invalidate(self, role_name: str | None = None) -> None:
        if role_name is None:
            self._cache.invalidate_all()
        else:
            self._cache.invalidate(role_name)
        LOGGER.info("permission_cache_invalidated", extra={"role": role_name or "*"})
