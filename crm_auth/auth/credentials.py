"""Password verification with failed-attempt lockout."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from crm_auth.auth.errors import AccountInactiveError, AccountLockedError, InvalidCredentialsError
from crm_auth.auth.models import Identity
from crm_auth.auth.repository import IdentityRepository
from crm_auth.core.config import LockoutConfig
from crm_auth.core.security import verify_password

LOGGER = logging.getLogger(__name__)

_MAX_CAS_TRIES = 5


@dataclass(frozen=True)
class CredentialState:
    failed_attempts: int
    lock_until: int | None

    @property
    def locked(self) -> bool:
        return self.lock_until is not None


def next_credential_state(
    state: CredentialState,
    now: int,
    matched: bool,
    policy: LockoutConfig,
) -> CredentialState:
    """Return the lockout state after one password check.

    A lock that has already lapsed restarts the count at this failure.
    """
    if matched:
        return CredentialState(failed_attempts=0, lock_until=None)
    if state.lock_until is not None and state.lock_until <= now:
        failed = 1
    else:
        failed = state.failed_attempts + 1
    lock_until = now + policy.lock_seconds if failed >= policy.max_failed_attempts else None
    return CredentialState(failed_attempts=failed, lock_until=lock_until)


class CredentialVerifier:
    """Check a password and persist the resulting lockout state atomically."""

    def __init__(
        self,
        repo: IdentityRepository,
        policy: LockoutConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repo = repo
        self._policy = policy
        self._clock = clock

    def verify(self, identity: Identity, candidate_password: str) -> Identity:
        """Return the updated identity or raise the matching credential failure."""
        matched = verify_password(candidate_password, identity.password_hash)
        current = identity
        for _ in range(_MAX_CAS_TRIES):
            now = int(self._clock())
            if current.status != "active":
                raise AccountInactiveError()
            if current.is_locked(now):
                raise AccountLockedError(current.lock_until)

            before = CredentialState(current.failed_attempts, current.lock_until)
            after = next_credential_state(before, now, matched, self._policy)
            if self._repo.compare_and_set_credential_state(
                current.user_id,
                expected=(before.failed_attempts, before.lock_until),
                failed_attempts=after.failed_attempts,
                lock_until=after.lock_until,
                now=now,
                last_login_at=now if matched else None,
            ):
                return self._outcome(current, after, matched, now)

            reloaded = self._repo.get(current.user_id)
            if reloaded is None:
                raise InvalidCredentialsError()
            current = reloaded

        LOGGER.warning("credential_state_contention", extra={"user_id": identity.user_id})
        raise InvalidCredentialsError()

    def _outcome(self, identity: Identity, state: CredentialState, matched: bool, now: int) -> Identity:
        updated = identity.model_copy(
            update={
                "failed_attempts": state.failed_attempts,
                "lock_until": state.lock_until,
                "updated_at": now,
                **({"last_login_at": now} if matched else {}),
            }
        )
        if matched:
            return updated
        if state.locked:
            LOGGER.warning("account_locked", extra={"user_id": identity.user_id})
            raise AccountLockedError(state.lock_until)
        LOGGER.info("password_mismatch", extra={"user_id": identity.user_id})
        raise InvalidCredentialsError()

    def unlock(self, user_id: str) -> bool:
        """Administrative reset of the counter and lock."""
        unlocked = self._repo.unlock(user_id, int(self._clock()))
        if unlocked:
            LOGGER.info("account_unlocked", extra={"user_id": user_id})
        return unlocked
