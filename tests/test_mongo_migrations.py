from __future__ import annotations

from typing import Any

from pymongo.errors import ServerSelectionTimeoutError

from crm_auth.core.mongo_migrations import MIGRATIONS, apply_mongo_migrations


class _Collection:
    def __init__(self) -> None:
        self.indexes: list[Any] = []
        self.rows: list[dict[str, Any]] = []

    def create_index(self, keys: Any, **kwargs: Any) -> str:
        self.indexes.append(keys)
        return str(keys)

    def find_one(self, query: dict[str, Any]) -> dict[str, Any] | None:
        for row in self.rows:
            if all(row.get(key) == value for key, value in query.items()):
                return row
        return None

    def insert_one(self, doc: dict[str, Any]) -> None:
        self.rows.append(doc)


class _Database:
    def __init__(self) -> None:
        self.collections: dict[str, _Collection] = {}

    def __getitem__(self, name: str) -> _Collection:
        return self.collections.setdefault(name, _Collection())


class _OfflineDatabase:
    def __getitem__(self, name: str) -> Any:
        raise ServerSelectionTimeoutError("no servers")


def test_apply_mongo_migrations_creates_indexes_once() -> None:
    db = _Database()

    first = apply_mongo_migrations(db)
    second = apply_mongo_migrations(db)

    assert first == [migration_id for migration_id, _ in MIGRATIONS]
    assert second == []
    assert "role_name" in db["auth_role_policies"].indexes
    assert "access_jti" in db["auth_sessions"].indexes
    assert len(db["schema_migrations"].rows) == len(MIGRATIONS)


def test_apply_mongo_migrations_skips_without_database() -> None:
    assert apply_mongo_migrations(None) == []


def test_apply_mongo_migrations_logs_store_failures() -> None:
    assert apply_mongo_migrations(_OfflineDatabase()) == []
