from __future__ import annotations

from pathlib import Path

import pytest

from crm_auth.auth.credentials import CredentialState, CredentialVerifier, next_credential_state
from crm_auth.auth.errors import AccountInactiveError, AccountLockedError, InvalidCredentialsError
from crm_auth.auth.repository import IdentityRepository
from crm_auth.core.config import LockoutConfig
from tests.auth_fixtures import START, FakeClock, add_identity

POLICY = LockoutConfig(max_failed_attempts=5, lock_seconds=7200)


def test_next_credential_state_locks_on_threshold() -> None:
    state = CredentialState(failed_attempts=4, lock_until=None)

    after = next_credential_state(state, 100, False, POLICY)

    assert after == CredentialState(failed_attempts=5, lock_until=100 + 7200)


def test_next_credential_state_restarts_count_after_lapsed_lock() -> None:
    state = CredentialState(failed_attempts=5, lock_until=50)

    after = next_credential_state(state, 100, False, POLICY)

    assert after == CredentialState(failed_attempts=1, lock_until=None)


def test_next_credential_state_success_clears_counter_and_lock() -> None:
    state = CredentialState(failed_attempts=3, lock_until=50)

    assert next_credential_state(state, 100, True, POLICY) == CredentialState(0, None)


def test_verifier_locks_on_fifth_failure_and_rejects_correct_password(tmp_path: Path) -> None:
    clock = FakeClock()
    repo = IdentityRepository(tmp_path)
    add_identity(repo, password="right-password")
    verifier = CredentialVerifier(repo, POLICY, clock=clock)

    for _ in range(4):
        with pytest.raises(InvalidCredentialsError):
            verifier.verify(repo.get("u-sales"), "wrong")
    with pytest.raises(AccountLockedError) as locked:
        verifier.verify(repo.get("u-sales"), "wrong")
    with pytest.raises(AccountLockedError):
        verifier.verify(repo.get("u-sales"), "right-password")

    stored = repo.get("u-sales")
    assert locked.value.status_code == 423
    assert stored is not None
    assert stored.failed_attempts == 5
    assert stored.lock_until == START + 7200


def test_verifier_accepts_password_after_lock_expires(tmp_path: Path) -> None:
    clock = FakeClock()
    repo = IdentityRepository(tmp_path)
    add_identity(repo, password="right-password")
    verifier = CredentialVerifier(repo, POLICY, clock=clock)
    for _ in range(5):
        with pytest.raises((InvalidCredentialsError, AccountLockedError)):
            verifier.verify(repo.get("u-sales"), "wrong")

    clock.advance(7201)
    identity = verifier.verify(repo.get("u-sales"), "right-password")

    stored = repo.get("u-sales")
    assert identity.failed_attempts == 0
    assert stored is not None
    assert stored.failed_attempts == 0
    assert stored.lock_until is None
    assert stored.last_login_at == START + 7201


def test_verifier_rejects_inactive_identity_without_counting(tmp_path: Path) -> None:
    repo = IdentityRepository(tmp_path)
    add_identity(repo, status="suspended")
    verifier = CredentialVerifier(repo, POLICY, clock=FakeClock())

    with pytest.raises(AccountInactiveError):
        verifier.verify(repo.get("u-sales"), "wrong")

    stored = repo.get("u-sales")
    assert stored is not None
    assert stored.failed_attempts == 0


def test_verifier_recomputes_when_stale_snapshot_loses_race(tmp_path: Path) -> None:
    repo = IdentityRepository(tmp_path)
    add_identity(repo)
    verifier = CredentialVerifier(repo, POLICY, clock=FakeClock())
    stale = repo.get("u-sales")
    with pytest.raises(InvalidCredentialsError):
        verifier.verify(repo.get("u-sales"), "wrong")

    with pytest.raises(InvalidCredentialsError):
        verifier.verify(stale, "wrong")

    stored = repo.get("u-sales")
    assert stored is not None
    assert stored.failed_attempts == 2


def test_unlock_clears_counter_and_lock(tmp_path: Path) -> None:
    repo = IdentityRepository(tmp_path)
    add_identity(repo, password="right-password")
    verifier = CredentialVerifier(repo, POLICY, clock=FakeClock())
    for _ in range(5):
        with pytest.raises((InvalidCredentialsError, AccountLockedError)):
            verifier.verify(repo.get("u-sales"), "wrong")

    assert verifier.unlock("u-sales") is True
    identity = verifier.verify(repo.get("u-sales"), "right-password")

    assert identity.lock_until is None
