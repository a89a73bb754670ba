"""Versioned MongoDB schema migrations for auth collections."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from crm_auth.core.logging import CORRELATION_ID_CTX

LOGGER = logging.getLogger(__name__)

MigrationFn = Callable[[Any], None]


def _migration_01_identity_indexes(db: Any) -> None:
    db["auth_identities"].create_index("user_id", unique=True)
    db["auth_identities"].create_index("email", unique=True)
    db["auth_identities"].create_index("role")


def _migration_02_otp_indexes(db: Any) -> None:
    db["auth_otp_challenges"].create_index("challenge_id", unique=True)
    db["auth_otp_challenges"].create_index(
        [("user_id", ASCENDING), ("purpose", ASCENDING), ("used", ASCENDING), ("created_at", DESCENDING)],
        name="idx_otp_open_by_identity",
    )
    db["auth_otp_challenges"].create_index("expires_at")


def _migration_03_session_indexes(db: Any) -> None:
    db["auth_sessions"].create_index("session_id", unique=True)
    db["auth_sessions"].create_index("access_jti", unique=True)
    db["auth_sessions"].create_index("refresh_jti", unique=True)
    db["auth_sessions"].create_index([("user_id", ASCENDING), ("is_active", ASCENDING)])
    db["auth_sessions"].create_index([("is_active", ASCENDING), ("last_activity_at", ASCENDING)])
    db["auth_sessions"].create_index("refresh_expires_at")


def _migration_04_role_policy_indexes(db: Any) -> None:
    db["auth_role_policies"].create_index("role_name", unique=True)
    db["auth_role_policies"].create_index([("is_active", ASCENDING), ("hierarchy", ASCENDING)])


MIGRATIONS: list[tuple[str, MigrationFn]] = [
    ("20261001_01_identity_indexes", _migration_01_identity_indexes),
    ("20261001_02_otp_indexes", _migration_02_otp_indexes),
    ("20261001_03_session_indexes", _migration_03_session_indexes),
    ("20261001_04_role_policy_indexes", _migration_04_role_policy_indexes),
]


def apply_mongo_migrations(db: Any | None) -> list[str]:
    """Apply pending migrations to ``db`` and return the ids applied in this run."""
    if db is None:
        return []

    applied: list[str] = []
    try:
        migration_collection = db["schema_migrations"]
        migration_collection.create_index("migration_id", unique=True)

        for migration_id, migration_fn in MIGRATIONS:
            if migration_collection.find_one({"migration_id": migration_id}):
                continue
            migration_fn(db)
            migration_collection.insert_one(
                {
                    "migration_id": migration_id,
                    "applied_at": datetime.now(timezone.utc),
                    "correlation_id": CORRELATION_ID_CTX.get(),
                }
            )
            applied.append(migration_id)
    except PyMongoError:
        LOGGER.exception("mongo_migrations_failed")
        return applied

    if applied:
        LOGGER.info("mongo_migrations_applied", extra={"reason": ",".join(applied)})
    return applied
