from __future__ import annotations

from pathlib import Path

import pytest

from crm_auth.auth import service as service_module
from crm_auth.auth.errors import (
    AccountLockedError,
    ChallengeMismatchError,
    InsufficientPermissionError,
    InvalidCredentialsError,
    NoValidChallengeError,
    OTPDeliveryError,
    RateLimitedError,
    SessionNotFoundError,
)
from crm_auth.auth.models import Principal
from tests.auth_fixtures import ADMIN_EMAIL, ADMIN_PASSWORD, Stack, add_identity, build_stack

UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) Safari/605.1.15"


def _bootstrapped(tmp_path: Path) -> Stack:
    stack = build_stack(tmp_path)
    stack.auth.bootstrap_admin_user()
    return stack


def _login(stack: Stack, email: str, password: str, ip: str = "10.0.0.1") -> dict:
    stack.auth.begin_login(email, password, client_ip=ip, user_agent=UA)
    return stack.auth.complete_login(email, stack.delivery.last_code(email), client_ip=ip, user_agent=UA)


def _principal(stack: Stack, access_token: str) -> Principal:
    validated = stack.sessions.validate(access_token)
    return Principal(
        identity=validated.identity,
        session=validated.session,
        permissions=stack.resolver.resolve_identity(validated.identity),
        claims=validated.claims,
    )


def test_bootstrap_admin_is_idempotent(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)
    stack.auth.bootstrap_admin_user()

    admin = stack.identities.get_by_email(ADMIN_EMAIL)

    assert admin is not None
    assert admin.role == "super_admin"
    assert stack.identities.role_distribution() == {"super_admin": 1}


def test_two_step_login_opens_session(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)

    started = stack.auth.begin_login(ADMIN_EMAIL.upper(), ADMIN_PASSWORD, client_ip="10.0.0.1", user_agent=UA)
    result = stack.auth.complete_login(
        ADMIN_EMAIL, stack.delivery.last_code(ADMIN_EMAIL), client_ip="10.0.0.1", user_agent=UA
    )

    assert started["otp_sent"] is True
    assert started["expires_in"] == 10
    assert started["device_info"]["browser"] == "Safari"
    assert result["user"]["email"] == ADMIN_EMAIL
    assert "password_hash" not in result["user"]
    assert result["tokens"]["token_type"] == "bearer"
    assert result["login_info"]["ip_address"] == "10.0.0.1"
    assert stack.sessions.count_active(result["user"]["user_id"]) == 1


def test_unknown_email_and_wrong_password_look_alike(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)

    with pytest.raises(InvalidCredentialsError) as unknown:
        stack.auth.begin_login("nobody@crm.test", "whatever", client_ip="10.0.0.1", user_agent=UA)
    with pytest.raises(InvalidCredentialsError) as wrong:
        stack.auth.begin_login(ADMIN_EMAIL, "whatever", client_ip="10.0.0.1", user_agent=UA)

    assert unknown.value.detail == wrong.value.detail
    assert stack.delivery.sent == []


def test_login_is_rate_limited_per_ip_and_email(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)
    add_identity(stack.identities)
    for _ in range(4):
        with pytest.raises(InvalidCredentialsError):
            stack.auth.begin_login("sales@crm.test", "wrong", client_ip="10.0.0.1", user_agent=UA)
    with pytest.raises(AccountLockedError):
        stack.auth.begin_login("sales@crm.test", "wrong", client_ip="10.0.0.1", user_agent=UA)

    with pytest.raises(RateLimitedError) as limited:
        stack.auth.begin_login("sales@crm.test", "sales-pass-123", client_ip="10.0.0.1", user_agent=UA)
    stack.auth.begin_login(ADMIN_EMAIL, ADMIN_PASSWORD, client_ip="10.0.0.1", user_agent=UA)

    assert limited.value.retry_after == 15 * 60


def test_delivery_failure_is_reported(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)
    stack.delivery.fail = True

    with pytest.raises(OTPDeliveryError) as exc:
        stack.auth.begin_login(ADMIN_EMAIL, ADMIN_PASSWORD, client_ip="10.0.0.1", user_agent=UA)

    assert exc.value.status_code == 500


def test_complete_login_rejects_wrong_code_and_unknown_email(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)
    stack.auth.begin_login(ADMIN_EMAIL, ADMIN_PASSWORD, client_ip="10.0.0.1", user_agent=UA)
    code = stack.delivery.last_code(ADMIN_EMAIL)
    wrong = "000000" if code != "000000" else "111111"

    with pytest.raises(ChallengeMismatchError):
        stack.auth.complete_login(ADMIN_EMAIL, wrong, client_ip="10.0.0.1", user_agent=UA)
    with pytest.raises(NoValidChallengeError):
        stack.auth.complete_login("nobody@crm.test", code, client_ip="10.0.0.2", user_agent=UA)


def test_resend_otp_answers_the_same_for_unknown_email(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)

    known = stack.auth.resend_otp(ADMIN_EMAIL, client_ip="10.0.0.1", user_agent=UA)
    unknown = stack.auth.resend_otp("nobody@crm.test", client_ip="10.0.0.1", user_agent=UA)

    assert known["otp_sent"] is unknown["otp_sent"] is True
    assert [item["to_email"] for item in stack.delivery.sent] == [ADMIN_EMAIL]


def test_refresh_and_logout(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)
    tokens = _login(stack, ADMIN_EMAIL, ADMIN_PASSWORD)["tokens"]

    refreshed = stack.auth.refresh(tokens["refresh_token"])
    principal = _principal(stack, refreshed["access_token"])

    assert refreshed["session_id"] == tokens["session_id"]
    assert stack.auth.logout(principal) is True
    with pytest.raises(SessionNotFoundError):
        stack.sessions.validate(refreshed["access_token"])
    with pytest.raises(SessionNotFoundError):
        stack.auth.refresh(tokens["refresh_token"])


def test_change_password_keeps_only_current_session(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)
    first = _login(stack, ADMIN_EMAIL, ADMIN_PASSWORD)["tokens"]
    second = _login(stack, ADMIN_EMAIL, ADMIN_PASSWORD, ip="10.0.0.2")["tokens"]
    principal = _principal(stack, second["access_token"])

    terminated = stack.auth.change_password(principal, ADMIN_PASSWORD, "brand-new-pass")

    assert terminated == 1
    with pytest.raises(SessionNotFoundError):
        stack.sessions.validate(first["access_token"])
    stack.sessions.validate(second["access_token"])
    stack.auth.begin_login(ADMIN_EMAIL, "brand-new-pass", client_ip="10.0.0.3", user_agent=UA)


def test_me_and_session_listing(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)
    add_identity(stack.identities)
    tokens = _login(stack, "sales@crm.test", "sales-pass-123")["tokens"]
    principal = _principal(stack, tokens["access_token"])

    me = stack.auth.me(principal)
    sessions = stack.auth.list_sessions(principal)

    assert me["user"]["role"] == "sales"
    assert "clients:read" in me["permissions"]
    assert me["dashboard_route"] == "/dashboard"
    assert [item["is_current"] for item in sessions] == [True]


def test_terminate_session_respects_hierarchy(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)
    add_identity(stack.identities)
    add_identity(stack.identities, user_id="u-client", email="client@crm.test", password="client-pass-1", role="client")
    admin = _principal(stack, _login(stack, ADMIN_EMAIL, ADMIN_PASSWORD)["tokens"]["access_token"])
    sales = _principal(stack, _login(stack, "sales@crm.test", "sales-pass-123")["tokens"]["access_token"])
    client = _principal(stack, _login(stack, "client@crm.test", "client-pass-1")["tokens"]["access_token"])

    with pytest.raises(InsufficientPermissionError):
        stack.auth.terminate_session(client, sales.session.session_id)
    stack.auth.terminate_session(sales, client.session.session_id)
    stack.auth.terminate_session(admin, sales.session.session_id)

    assert stack.sessions.get(client.session.session_id).termination_reason == "admin_action"
    assert stack.sessions.get(sales.session.session_id).terminated_by == admin.user_id
    with pytest.raises(SessionNotFoundError) as missing:
        stack.auth.terminate_session(admin, sales.session.session_id)
    assert missing.value.status_code == 404


def test_admin_unlock_and_revoke(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)
    add_identity(stack.identities)
    admin = _principal(stack, _login(stack, ADMIN_EMAIL, ADMIN_PASSWORD)["tokens"]["access_token"])
    sales_tokens = _login(stack, "sales@crm.test", "sales-pass-123", ip="10.0.0.9")["tokens"]
    for _ in range(5):
        with pytest.raises((InvalidCredentialsError, AccountLockedError)):
            stack.credentials.verify(stack.identities.get("u-sales"), "wrong")

    stack.auth.unlock_identity(admin, "u-sales")
    revoked = stack.auth.revoke_sessions(admin, "u-sales")

    assert stack.identities.get("u-sales").lock_until is None
    assert revoked == 1
    with pytest.raises(SessionNotFoundError):
        stack.sessions.validate(sales_tokens["access_token"])


def test_repeated_password_change_failures_flag_the_session(tmp_path: Path) -> None:
    stack = _bootstrapped(tmp_path)
    add_identity(stack.identities)
    tokens = _login(stack, "sales@crm.test", "sales-pass-123")["tokens"]
    principal = _principal(stack, tokens["access_token"])

    for _ in range(3):
        with pytest.raises(InvalidCredentialsError):
            stack.auth.change_password(principal, "not-my-password", "brand-new-pass")
    with pytest.raises(RateLimitedError) as limited:
        stack.auth.change_password(principal, "sales-pass-123", "brand-new-pass")

    flags = stack.sessions.get(tokens["session_id"]).security_flags
    assert limited.value.status_code == 429
    assert flags.multiple_failed_attempts is True
    assert flags.unusual_location is False
    assert stack.sessions.validate(tokens["access_token"]).session.is_active


def test_unknown_email_still_pays_for_a_password_check(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    stack = _bootstrapped(tmp_path)
    checked: list[str] = []
    monkeypatch.setattr(
        service_module, "verify_password", lambda password, stored: checked.append(password) or False
    )

    with pytest.raises(InvalidCredentialsError):
        stack.auth.begin_login("nobody@crm.test", "guess-123", client_ip="10.0.0.1", user_agent=UA)

    assert checked == ["guess-123"]
