"""One-time code challenges for the second login factor."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable

from crm_auth.auth.errors import (
    AttemptsExceededError,
    ChallengeExpiredError,
    ChallengeMismatchError,
    NoValidChallengeError,
)
from crm_auth.auth.models import Identity, IssuedChallenge, OTPChallengeRecord
from crm_auth.auth.repository import OTPRepository
from crm_auth.core.config import OTPConfig
from crm_auth.core.security import codes_match, generate_numeric_code, hash_code

LOGGER = logging.getLogger(__name__)


class OTPChallengeService:
    """Issue and verify single-use numeric codes per (identity, purpose)."""

    def __init__(
        self,
        repo: OTPRepository,
        config: OTPConfig,
        *,
        environment: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repo = repo
        self._config = config
        self._clock = clock
        self._bypass_code = (
            config.static_bypass_code
            if config.static_bypass_enabled and config.static_bypass_code and environment != "production"
            else ""
        )
        if self._bypass_code:
            LOGGER.warning("otp_static_bypass_enabled")

    @property
    def ttl_seconds(self) -> int:
        return self._config.ttl_seconds

    def issue(
        self,
        identity: Identity,
        purpose: str = "login",
        ip_address: str = "",
        user_agent: str = "",
    ) -> IssuedChallenge:
        """Supersede any open challenge for the pair and create a fresh one."""
        now = int(self._clock())
        code = generate_numeric_code(self._config.code_length)
        record = OTPChallengeRecord(
            challenge_id=uuid.uuid4().hex,
            user_id=identity.user_id,
            purpose=purpose,
            code_hash=hash_code(code),
            expires_at=now + self._config.ttl_seconds,
            max_attempts=self._config.max_attempts,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )
        superseded = self._repo.insert_superseding(record)
        LOGGER.info(
            "otp_issued",
            extra={"user_id": identity.user_id, "purpose": purpose, "reason": f"superseded={superseded}"},
        )
        return IssuedChallenge(
            challenge_id=record.challenge_id,
            code=code,
            expires_at=record.expires_at,
        )

    def verify(self, identity: Identity, purpose: str, candidate_code: str) -> None:
        """Redeem the newest open challenge or raise the matching failure."""
        now = int(self._clock())
        record = self._repo.latest_unused(identity.user_id, purpose)
        if record is None:
            raise NoValidChallengeError()
        if record.expires_at <= now:
            raise ChallengeExpiredError()
        if record.attempts >= record.max_attempts:
            raise AttemptsExceededError()

        candidate = candidate_code.strip()
        if self._bypass_code and candidate == self._bypass_code:
            LOGGER.warning("otp_static_bypass_used", extra={"user_id": identity.user_id, "purpose": purpose})
            self._redeem(record, now)
            return

        if not codes_match(candidate, record.code_hash):
            bumped = self._repo.increment_attempts(record.challenge_id)
            if bumped is None:
                raise AttemptsExceededError()
            raise ChallengeMismatchError(max(0, bumped.max_attempts - bumped.attempts))

        self._redeem(record, now)

    def _redeem(self, record: OTPChallengeRecord, now: int) -> None:
        if not self._repo.redeem(record.challenge_id, now):
            raise NoValidChallengeError()
        LOGGER.info("otp_verified", extra={"user_id": record.user_id, "purpose": record.purpose})

    def cleanup_expired(self) -> int:
        now = int(self._clock())
        deleted = self._repo.delete_stale(now, now - self._config.retention_seconds)
        if deleted:
            LOGGER.info("otp_cleanup", extra={"reason": f"deleted={deleted}"})
        return deleted

    def stats(self) -> dict[str, int]:
        return self._repo.stats(int(self._clock()))
