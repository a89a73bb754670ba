"""Repositories for identities, one-time code challenges and sessions.

Each repository uses MongoDB when a database handle is supplied and a
lock-guarded JSON file under ``<runtime_dir>/auth_store`` otherwise. State
transitions that must not race (attempt counters, single redemption,
termination, token rotation) are conditional updates in both backends.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pymongo import DESCENDING, ReturnDocument

from crm_auth.auth.models import Identity, OTPChallengeRecord, SessionRecord
from crm_auth.core.store import JsonCollection, mongo_errors


def _file_collection(runtime_dir: Path, name: str) -> JsonCollection:
    return JsonCollection(runtime_dir / "auth_store" / f"{name}.json")


class IdentityRepository:
    """Identity storage with compare-and-set for credential state."""

    def __init__(self, runtime_dir: Path, database: Any | None = None) -> None:
        self._mongo = database["auth_identities"] if database is not None else None
        self._file = _file_collection(runtime_dir, "identities")

    def get(self, user_id: str) -> Identity | None:
        if self._mongo is not None:
            with mongo_errors("identity_get"):
                doc = self._mongo.find_one({"user_id": user_id}, {"_id": 0})
            return Identity.model_validate(doc) if doc else None
        row = self._file.find_one(lambda row: row.get("user_id") == user_id)
        return Identity.model_validate(row) if row else None

    def get_by_email(self, email: str) -> Identity | None:
        key = email.strip().lower()
        if self._mongo is not None:
            with mongo_errors("identity_get_by_email"):
                doc = self._mongo.find_one({"email": key}, {"_id": 0})
            return Identity.model_validate(doc) if doc else None
        row = self._file.find_one(lambda row: str(row.get("email", "")).lower() == key)
        return Identity.model_validate(row) if row else None

    def upsert(self, identity: Identity) -> None:
        doc = identity.model_dump()
        doc["email"] = identity.email.strip().lower()
        if self._mongo is not None:
            with mongo_errors("identity_upsert"):
                self._mongo.update_one({"user_id": identity.user_id}, {"$set": doc}, upsert=True)
            return
        self._file.upsert(lambda row: row.get("user_id") == identity.user_id, doc)

    def compare_and_set_credential_state(
        self,
        user_id: str,
        *,
        expected: tuple[int, int | None],
        failed_attempts: int,
        lock_until: int | None,
        now: int,
        last_login_at: int | None = None,
    ) -> bool:
        """Write new lockout state only if ``(failed_attempts, lock_until)`` still equals ``expected``."""
        expected_failed, expected_lock = expected
        changes: dict[str, Any] = {
            "failed_attempts": failed_attempts,
            "lock_until": lock_until,
            "updated_at": now,
        }
        if last_login_at is not None:
            changes["last_login_at"] = last_login_at
        if self._mongo is not None:
            with mongo_errors("identity_credential_cas"):
                result = self._mongo.update_one(
                    {
                        "user_id": user_id,
                        "failed_attempts": expected_failed,
                        "lock_until": expected_lock,
                    },
                    {"$set": changes},
                )
            return result.modified_count == 1

        def _matches(row: dict[str, Any]) -> bool:
            return (
                row.get("user_id") == user_id
                and int(row.get("failed_attempts") or 0) == expected_failed
                and row.get("lock_until") == expected_lock
            )

        return bool(self._file.update(_matches, changes))

    def unlock(self, user_id: str, now: int) -> bool:
        changes = {"failed_attempts": 0, "lock_until": None, "updated_at": now}
        if self._mongo is not None:
            with mongo_errors("identity_unlock"):
                result = self._mongo.update_one({"user_id": user_id}, {"$set": changes})
            return result.matched_count == 1
        return bool(self._file.update(lambda row: row.get("user_id") == user_id, changes))

    def set_password_hash(self, user_id: str, password_hash: str, now: int) -> bool:
        changes = {"password_hash": password_hash, "updated_at": now}
        if self._mongo is not None:
            with mongo_errors("identity_set_password"):
                result = self._mongo.update_one({"user_id": user_id}, {"$set": changes})
            return result.matched_count == 1
        return bool(self._file.update(lambda row: row.get("user_id") == user_id, changes))

    def set_permissions(self, user_ids: list[str], permissions: dict[str, Any], now: int) -> int:
        """Write a per-identity permission matrix to every listed identity."""
        wanted = set(user_ids)
        changes = {"permissions": permissions, "updated_at": now}
        if self._mongo is not None:
            with mongo_errors("identity_set_permissions"):
                result = self._mongo.update_many({"user_id": {"$in": sorted(wanted)}}, {"$set": changes})
            return int(result.modified_count)
        return len(self._file.update(lambda row: row.get("user_id") in wanted, changes, many=True))

    def count_by_role(self, role: str) -> int:
        if self._mongo is not None:
            with mongo_errors("identity_count_by_role"):
                return int(self._mongo.count_documents({"role": role}))
        return self._file.count(lambda row: row.get("role") == role)

    def role_distribution(self) -> dict[str, int]:
        if self._mongo is not None:
            with mongo_errors("identity_role_distribution"):
                rows = list(self._mongo.aggregate([{"$group": {"_id": "$role", "count": {"$sum": 1}}}]))
            return {str(row["_id"]): int(row["count"]) for row in rows}
        counts: dict[str, int] = {}
        for row in self._file.find(lambda row: True):
            role = str(row.get("role") or "")
            counts[role] = counts.get(role, 0) + 1
        return counts


class OTPRepository:
    """Challenge storage. Plaintext codes never reach this layer."""

    def __init__(self, runtime_dir: Path, database: Any | None = None) -> None:
        self._mongo = database["auth_otp_challenges"] if database is not None else None
        self._file = _file_collection(runtime_dir, "otp_challenges")

    def insert(self, record: OTPChallengeRecord) -> None:
        if self._mongo is not None:
            with mongo_errors("otp_insert"):
                self._mongo.insert_one(record.model_dump())
            return
        self._file.insert(record.model_dump())

    def insert_superseding(self, record: OTPChallengeRecord) -> int:
        """Store ``record`` and mark every older unused challenge for its pair as used.

        On MongoDB the insert comes first and only challenges ordered before
        ``record`` by (created_at, challenge_id) are retired, so concurrent
        issuers converge on the newest challenge instead of retiring each other.
        """
        if self._mongo is not None:
            with mongo_errors("otp_insert_superseding"):
                self._mongo.insert_one(record.model_dump())
                result = self._mongo.update_many(
                    {
                        "user_id": record.user_id,
                        "purpose": record.purpose,
                        "used": False,
                        "$or": [
                            {"created_at": {"$lt": record.created_at}},
                            {"created_at": record.created_at, "challenge_id": {"$lt": record.challenge_id}},
                        ],
                    },
                    {"$set": {"used": True}},
                )
            return int(result.modified_count)
        return self._file.supersede(
            lambda row: row.get("user_id") == record.user_id
            and row.get("purpose") == record.purpose
            and not row.get("used"),
            {"used": True},
            record.model_dump(),
        )

    def latest_unused(self, user_id: str, purpose: str) -> OTPChallengeRecord | None:
        if self._mongo is not None:
            with mongo_errors("otp_latest_unused"):
                doc = self._mongo.find_one(
                    {"user_id": user_id, "purpose": purpose, "used": False},
                    {"_id": 0},
                    sort=[("created_at", DESCENDING)],
                )
            return OTPChallengeRecord.model_validate(doc) if doc else None
        rows = self._file.find(
            lambda row: row.get("user_id") == user_id
            and row.get("purpose") == purpose
            and not row.get("used")
        )
        if not rows:
            return None
        return OTPChallengeRecord.model_validate(max(rows, key=lambda row: int(row.get("created_at") or 0)))

    def increment_attempts(self, challenge_id: str) -> OTPChallengeRecord | None:
        """Count one failed try while the challenge is unused and under its ceiling."""
        if self._mongo is not None:
            with mongo_errors("otp_increment_attempts"):
                doc = self._mongo.find_one_and_update(
                    {
                        "challenge_id": challenge_id,
                        "used": False,
                        "$expr": {"$lt": ["$attempts", "$max_attempts"]},
                    },
                    {"$inc": {"attempts": 1}},
                    projection={"_id": 0},
                    return_document=ReturnDocument.AFTER,
                )
            return OTPChallengeRecord.model_validate(doc) if doc else None

        def _bump(row: dict[str, Any]) -> None:
            row["attempts"] = int(row.get("attempts") or 0) + 1

        updated = self._file.update(
            lambda row: row.get("challenge_id") == challenge_id
            and not row.get("used")
            and int(row.get("attempts") or 0) < int(row.get("max_attempts") or 0),
            _bump,
        )
        return OTPChallengeRecord.model_validate(updated[0]) if updated else None

    def redeem(self, challenge_id: str, now: int) -> bool:
        """Mark the challenge used if it is still unused, unexpired and under its ceiling."""
        if self._mongo is not None:
            with mongo_errors("otp_redeem"):
                result = self._mongo.update_one(
                    {
                        "challenge_id": challenge_id,
                        "used": False,
                        "expires_at": {"$gt": now},
                        "$expr": {"$lt": ["$attempts", "$max_attempts"]},
                    },
                    {"$set": {"used": True}},
                )
            return result.modified_count == 1
        return bool(
            self._file.update(
                lambda row: row.get("challenge_id") == challenge_id
                and not row.get("used")
                and int(row.get("expires_at") or 0) > now
                and int(row.get("attempts") or 0) < int(row.get("max_attempts") or 0),
                {"used": True},
            )
        )

    def delete_stale(self, now: int, used_before: int) -> int:
        """Delete expired challenges and used ones created before ``used_before``."""
        if self._mongo is not None:
            with mongo_errors("otp_delete_stale"):
                result = self._mongo.delete_many(
                    {
                        "$or": [
                            {"expires_at": {"$lte": now}},
                            {"used": True, "created_at": {"$lt": used_before}},
                        ]
                    }
                )
            return int(result.deleted_count)
        return self._file.delete(
            lambda row: int(row.get("expires_at") or 0) <= now
            or (bool(row.get("used")) and int(row.get("created_at") or 0) < used_before)
        )

    def stats(self, now: int) -> dict[str, int]:
        if self._mongo is not None:
            with mongo_errors("otp_stats"):
                total = self._mongo.count_documents({})
                used = self._mongo.count_documents({"used": True})
                expired = self._mongo.count_documents({"used": False, "expires_at": {"$lte": now}})
        else:
            rows = self._file.find(lambda row: True)
            total = len(rows)
            used = sum(1 for row in rows if row.get("used"))
            expired = sum(
                1 for row in rows if not row.get("used") and int(row.get("expires_at") or 0) <= now
            )
        return {
            "total": int(total),
            "used": int(used),
            "expired": int(expired),
            "active": int(total - used - expired),
        }


class SessionRepository:
    """Session storage keyed by session id and both token ids."""

    def __init__(self, runtime_dir: Path, database: Any | None = None) -> None:
        self._mongo = database["auth_sessions"] if database is not None else None
        self._file = _file_collection(runtime_dir, "sessions")

    def _find_one(self, field: str, value: str, operation: str) -> SessionRecord | None:
        if self._mongo is not None:
            with mongo_errors(operation):
                doc = self._mongo.find_one({field: value}, {"_id": 0})
            return SessionRecord.model_validate(doc) if doc else None
        row = self._file.find_one(lambda row: row.get(field) == value)
        return SessionRecord.model_validate(row) if row else None

    def insert(self, record: SessionRecord) -> None:
        if self._mongo is not None:
            with mongo_errors("session_insert"):
                self._mongo.insert_one(record.model_dump())
            return
        self._file.insert(record.model_dump())

    def get(self, session_id: str) -> SessionRecord | None:
        return self._find_one("session_id", session_id, "session_get")

    def get_by_access_jti(self, jti: str) -> SessionRecord | None:
        return self._find_one("access_jti", jti, "session_get_by_access_jti")

    def get_by_refresh_jti(self, jti: str) -> SessionRecord | None:
        return self._find_one("refresh_jti", jti, "session_get_by_refresh_jti")

    def touch(self, session_id: str, now: int) -> None:
        if self._mongo is not None:
            with mongo_errors("session_touch"):
                self._mongo.update_one(
                    {"session_id": session_id, "is_active": True},
                    {"$set": {"last_activity_at": now}},
                )
            return
        self._file.update(
            lambda row: row.get("session_id") == session_id and bool(row.get("is_active")),
            {"last_activity_at": now},
        )

    def rotate_access(
        self,
        session_id: str,
        *,
        expected_access_jti: str,
        access_jti: str,
        access_expires_at: int,
        now: int,
    ) -> bool:
        """Swap the access token id on an active session if nobody rotated it first."""
        changes = {
            "access_jti": access_jti,
            "access_expires_at": access_expires_at,
            "last_activity_at": now,
        }
        if self._mongo is not None:
            with mongo_errors("session_rotate_access"):
                result = self._mongo.update_one(
                    {
                        "session_id": session_id,
                        "is_active": True,
                        "access_jti": expected_access_jti,
                    },
                    {"$set": changes},
                )
            return result.modified_count == 1
        return bool(
            self._file.update(
                lambda row: row.get("session_id") == session_id
                and bool(row.get("is_active"))
                and row.get("access_jti") == expected_access_jti,
                changes,
            )
        )

    @staticmethod
    def _termination(reason: str, actor_id: str | None, now: int) -> dict[str, Any]:
        return {
            "is_active": False,
            "terminated_at": now,
            "terminated_by": actor_id,
            "termination_reason": reason,
        }

    def terminate(self, session_id: str, *, reason: str, actor_id: str | None, now: int) -> bool:
        changes = self._termination(reason, actor_id, now)
        if self._mongo is not None:
            with mongo_errors("session_terminate"):
                result = self._mongo.update_one(
                    {"session_id": session_id, "is_active": True},
                    {"$set": changes},
                )
            return result.modified_count == 1
        return bool(
            self._file.update(
                lambda row: row.get("session_id") == session_id and bool(row.get("is_active")),
                changes,
            )
        )

    def terminate_for_user(
        self,
        user_id: str,
        *,
        reason: str,
        actor_id: str | None,
        now: int,
        except_session_id: str | None = None,
    ) -> int:
        changes = self._termination(reason, actor_id, now)
        if self._mongo is not None:
            query: dict[str, Any] = {"user_id": user_id, "is_active": True}
            if except_session_id:
                query["session_id"] = {"$ne": except_session_id}
            with mongo_errors("session_terminate_for_user"):
                result = self._mongo.update_many(query, {"$set": changes})
            return int(result.modified_count)
        return len(
            self._file.update(
                lambda row: row.get("user_id") == user_id
                and bool(row.get("is_active"))
                and row.get("session_id") != except_session_id,
                changes,
                many=True,
            )
        )

    def terminate_idle(self, *, idle_before: int, now: int) -> int:
        changes = self._termination("inactivity", "system", now)
        if self._mongo is not None:
            with mongo_errors("session_terminate_idle"):
                result = self._mongo.update_many(
                    {"is_active": True, "last_activity_at": {"$lt": idle_before}},
                    {"$set": changes},
                )
            return int(result.modified_count)
        return len(
            self._file.update(
                lambda row: bool(row.get("is_active"))
                and int(row.get("last_activity_at") or 0) < idle_before,
                changes,
                many=True,
            )
        )

    def list_active(self, user_id: str, now: int) -> list[SessionRecord]:
        if self._mongo is not None:
            with mongo_errors("session_list_active"):
                docs = list(
                    self._mongo.find(
                        {"user_id": user_id, "is_active": True, "access_expires_at": {"$gt": now}},
                        {"_id": 0},
                    ).sort("last_activity_at", DESCENDING)
                )
            return [SessionRecord.model_validate(doc) for doc in docs]
        rows = self._file.find(
            lambda row: row.get("user_id") == user_id
            and bool(row.get("is_active"))
            and int(row.get("access_expires_at") or 0) > now
        )
        rows.sort(key=lambda row: int(row.get("last_activity_at") or 0), reverse=True)
        return [SessionRecord.model_validate(row) for row in rows]

    def count_active(self, user_id: str, now: int) -> int:
        if self._mongo is not None:
            with mongo_errors("session_count_active"):
                return int(
                    self._mongo.count_documents(
                        {"user_id": user_id, "is_active": True, "access_expires_at": {"$gt": now}}
                    )
                )
        return self._file.count(
            lambda row: row.get("user_id") == user_id
            and bool(row.get("is_active"))
            and int(row.get("access_expires_at") or 0) > now
        )

    def raise_flags(self, session_id: str, flags: set[str]) -> bool:
        """Set the named security flags to true. Never clears any flag."""
        if not flags:
            return False
        if self._mongo is not None:
            with mongo_errors("session_raise_flags"):
                result = self._mongo.update_one(
                    {"session_id": session_id},
                    {"$set": {f"security_flags.{name}": True for name in sorted(flags)}},
                )
            return result.modified_count == 1

        def _raise(row: dict[str, Any]) -> None:
            current = dict(row.get("security_flags") or {})
            current.update({name: True for name in flags})
            row["security_flags"] = current

        return bool(self._file.update(lambda row: row.get("session_id") == session_id, _raise))

    def clear_flags(self, session_id: str) -> bool:
        cleared = {
            "suspicious_activity": False,
            "multiple_failed_attempts": False,
            "unusual_location": False,
            "concurrent_sessions": False,
        }
        if self._mongo is not None:
            with mongo_errors("session_clear_flags"):
                result = self._mongo.update_one(
                    {"session_id": session_id},
                    {"$set": {"security_flags": cleared}},
                )
            return result.matched_count == 1
        return bool(
            self._file.update(
                lambda row: row.get("session_id") == session_id,
                {"security_flags": cleared},
            )
        )

    def purge(self, *, older_than: int) -> int:
        """Delete terminated sessions and sessions whose refresh window ended before ``older_than``."""
        if self._mongo is not None:
            with mongo_errors("session_purge"):
                result = self._mongo.delete_many(
                    {
                        "$or": [
                            {"is_active": False, "terminated_at": {"$lt": older_than}},
                            {"refresh_expires_at": {"$lt": older_than}},
                        ]
                    }
                )
            return int(result.deleted_count)

        def _stale(row: dict[str, Any]) -> bool:
            terminated_at = row.get("terminated_at")
            if not row.get("is_active") and terminated_at is not None and int(terminated_at) < older_than:
                return True
            return int(row.get("refresh_expires_at") or 0) < older_than

        return self._file.delete(_stale)

    def stats(self, now: int) -> dict[str, int]:
        if self._mongo is not None:
            with mongo_errors("session_stats"):
                total = self._mongo.count_documents({})
                active = self._mongo.count_documents(
                    {"is_active": True, "access_expires_at": {"$gt": now}}
                )
                terminated = self._mongo.count_documents({"is_active": False})
        else:
            rows = self._file.find(lambda row: True)
            total = len(rows)
            active = sum(
                1
                for row in rows
                if row.get("is_active") and int(row.get("access_expires_at") or 0) > now
            )
            terminated = sum(1 for row in rows if not row.get("is_active"))
        return {
            "total": int(total),
            "active": int(active),
            "terminated": int(terminated),
            "expired": int(total - active - terminated),
        }
