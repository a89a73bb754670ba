"""Repository for role policies."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from crm_auth.core.store import JsonCollection, mongo_errors
from crm_auth.roles.models import RolePolicy


class RoleRepository:
    """Role policies with MongoDB primary and file-store fallback."""

    def __init__(self, runtime_dir: Path, database: Any | None = None) -> None:
        self._mongo = database["auth_role_policies"] if database is not None else None
        self._file = JsonCollection(runtime_dir / "auth_store" / "role_policies.json")

    def get(self, role_name: str) -> RolePolicy | None:
        if self._mongo is not None:
            with mongo_errors("role_get"):
                doc = self._mongo.find_one({"role_name": role_name}, {"_id": 0})
            return RolePolicy.model_validate(doc) if doc else None
        row = self._file.find_one(lambda row: row.get("role_name") == role_name)
        return RolePolicy.model_validate(row) if row else None

    def list(self, *, include_inactive: bool = False) -> list[RolePolicy]:
        if self._mongo is not None:
            query: dict[str, Any] = {} if include_inactive else {"is_active": True}
            with mongo_errors("role_list"):
                docs = list(self._mongo.find(query, {"_id": 0}).sort("hierarchy", ASCENDING))
            return [RolePolicy.model_validate(doc) for doc in docs]
        rows = self._file.find(lambda row: include_inactive or bool(row.get("is_active")))
        rows.sort(key=lambda row: int(row.get("hierarchy") or 0))
        return [RolePolicy.model_validate(row) for row in rows]

    def insert(self, policy: RolePolicy) -> bool:
        """Create a policy; ``False`` when the role name is taken."""
        doc = policy.model_dump()
        if self._mongo is not None:
            with mongo_errors("role_insert"):
                try:
                    self._mongo.insert_one(doc)
                except DuplicateKeyError:
                    return False
            return True
        return self._file.insert_unique(lambda row: row.get("role_name") == policy.role_name, doc)

    def update(self, role_name: str, changes: dict[str, Any]) -> RolePolicy | None:
        if self._mongo is not None:
            with mongo_errors("role_update"):
                doc = self._mongo.find_one_and_update(
                    {"role_name": role_name},
                    {"$set": changes},
                    projection={"_id": 0},
                    return_document=ReturnDocument.AFTER,
                )
            return RolePolicy.model_validate(doc) if doc else None
        updated = self._file.update(lambda row: row.get("role_name") == role_name, changes)
        return RolePolicy.model_validate(updated[0]) if updated else None

    def delete(self, role_name: str) -> bool:
        if self._mongo is not None:
            with mongo_errors("role_delete"):
                result = self._mongo.delete_one({"role_name": role_name})
            return result.deleted_count == 1
        return self._file.delete(lambda row: row.get("role_name") == role_name) > 0

    def counts(self) -> dict[str, int]:
        policies = self.list()
        system = sum(1 for policy in policies if policy.is_system_role)
        return {"total": len(policies), "system": system, "custom": len(policies) - system}
