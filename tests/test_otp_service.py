from __future__ import annotations

import json
from pathlib import Path

import pytest

from crm_auth.auth.errors import (
    AttemptsExceededError,
    ChallengeExpiredError,
    ChallengeMismatchError,
    NoValidChallengeError,
)
from crm_auth.auth.otp import OTPChallengeService
from crm_auth.auth.repository import IdentityRepository, OTPRepository
from crm_auth.core.config import OTPConfig
from crm_auth.core.security import hash_code
from tests.auth_fixtures import FakeClock, add_identity


def _service(tmp_path: Path, clock: FakeClock, *, environment: str = "test", **overrides) -> OTPChallengeService:
    return OTPChallengeService(
        OTPRepository(tmp_path),
        OTPConfig(**overrides),
        environment=environment,
        clock=clock,
    )


def _identity(tmp_path: Path):
    return add_identity(IdentityRepository(tmp_path))


def test_issue_stores_only_code_digest(tmp_path: Path) -> None:
    service = _service(tmp_path, FakeClock())
    issued = service.issue(_identity(tmp_path), "login", "10.0.0.1", "ua")

    rows = json.loads((tmp_path / "auth_store" / "otp_challenges.json").read_text(encoding="utf-8"))

    assert len(issued.code) == 6
    assert len(rows) == 1
    assert rows[0]["code_hash"] == hash_code(issued.code)
    assert issued.code not in {str(value) for value in rows[0].values()}
    assert rows[0]["ip_address"] == "10.0.0.1"


def test_verify_succeeds_once_then_reports_no_valid_challenge(tmp_path: Path) -> None:
    service = _service(tmp_path, FakeClock())
    identity = _identity(tmp_path)
    issued = service.issue(identity)

    service.verify(identity, "login", issued.code)
    with pytest.raises(NoValidChallengeError):
        service.verify(identity, "login", issued.code)


def test_new_challenge_supersedes_previous_code(tmp_path: Path) -> None:
    service = _service(tmp_path, FakeClock())
    identity = _identity(tmp_path)
    first = service.issue(identity)
    second = service.issue(identity)

    if first.code != second.code:
        with pytest.raises(ChallengeMismatchError):
            service.verify(identity, "login", first.code)
    service.verify(identity, "login", second.code)


def test_mismatch_counts_down_then_correct_code_is_refused(tmp_path: Path) -> None:
    service = _service(tmp_path, FakeClock())
    identity = _identity(tmp_path)
    issued = service.issue(identity)
    wrong = "000000" if issued.code != "000000" else "111111"

    remaining = []
    for _ in range(3):
        with pytest.raises(ChallengeMismatchError) as exc:
            service.verify(identity, "login", wrong)
        remaining.append(exc.value.attempts_remaining)
    with pytest.raises(AttemptsExceededError):
        service.verify(identity, "login", issued.code)

    assert remaining == [2, 1, 0]


def test_expired_challenge_is_rejected_without_comparing(tmp_path: Path) -> None:
    clock = FakeClock()
    service = _service(tmp_path, clock)
    identity = _identity(tmp_path)
    issued = service.issue(identity)

    clock.advance(601)

    with pytest.raises(ChallengeExpiredError):
        service.verify(identity, "login", issued.code)


def test_verify_without_challenge_raises_no_valid_challenge(tmp_path: Path) -> None:
    service = _service(tmp_path, FakeClock())

    with pytest.raises(NoValidChallengeError):
        service.verify(_identity(tmp_path), "login", "123456")


def test_static_bypass_only_outside_production(tmp_path: Path) -> None:
    clock = FakeClock()
    identity = _identity(tmp_path)
    dev = _service(tmp_path, clock, static_bypass_enabled=True, static_bypass_code="999999")
    dev.issue(identity)
    dev.verify(identity, "login", "999999")

    prod = _service(tmp_path, clock, environment="production", static_bypass_enabled=True, static_bypass_code="999999")
    issued = prod.issue(identity)
    if issued.code != "999999":
        with pytest.raises(ChallengeMismatchError):
            prod.verify(identity, "login", "999999")


def test_cleanup_removes_expired_and_old_used_challenges(tmp_path: Path) -> None:
    clock = FakeClock()
    service = _service(tmp_path, clock)
    identity = _identity(tmp_path)
    other = add_identity(IdentityRepository(tmp_path), user_id="u-2", email="two@crm.test")
    used = service.issue(identity)
    service.verify(identity, "login", used.code)
    service.issue(other)

    clock.advance(300)
    assert service.cleanup_expired() == 0

    clock.advance(400)
    fresh = service.issue(identity)
    deleted = service.cleanup_expired()
    stats = service.stats()

    assert deleted == 2
    assert stats["total"] == 1
    assert stats["active"] == 1

    clock.advance(24 * 3600)
    service.cleanup_expired()
    assert service.stats()["total"] == 0
    assert fresh.challenge_id


def test_interleaved_issues_leave_one_open_challenge(tmp_path: Path) -> None:
    clock = FakeClock()
    repo = OTPRepository(tmp_path)
    service = OTPChallengeService(repo, OTPConfig(), environment="test", clock=clock)
    identity = _identity(tmp_path)
    store = repo.insert_superseding
    nested: list = []

    def _racing_insert(record):
        if not nested:
            nested.append(service.issue(identity, "login"))
        return store(record)

    repo.insert_superseding = _racing_insert  # type: ignore[method-assign]
    outer = service.issue(identity, "login")

    rows = json.loads((tmp_path / "auth_store" / "otp_challenges.json").read_text(encoding="utf-8"))
    open_rows = [row for row in rows if not row["used"]]

    assert len(rows) == 2
    assert [row["challenge_id"] for row in open_rows] == [outer.challenge_id]
    if nested[0].code != outer.code:
        with pytest.raises(ChallengeMismatchError):
            service.verify(identity, "login", nested[0].code)
    service.verify(identity, "login", outer.code)
