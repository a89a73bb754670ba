"""Background cleanup of idle sessions, stale challenges and in-memory state."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from crm_auth.auth.otp import OTPChallengeService
from crm_auth.auth.rate_limiter import RateLimiter
from crm_auth.auth.sessions import SessionManager
from crm_auth.core.config import CleanupConfig
from crm_auth.roles.cache import PermissionCache

LOGGER = logging.getLogger(__name__)


@dataclass
class _Job:
    name: str
    interval_seconds: int
    run: Callable[[], int]
    last_run_at: float = 0.0
    last_result: int = 0


class CleanupService:
    """Periodic jobs that only terminate or delete records that are already inert."""

    def __init__(
        self,
        *,
        sessions: SessionManager,
        otp: OTPChallengeService,
        rate_limiter: RateLimiter,
        permission_cache: PermissionCache,
        config: CleanupConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._jobs = [
            _Job("inactive_sessions", config.inactive_sessions_interval_seconds, sessions.terminate_inactive),
            _Job("expired_otps", config.expired_otps_interval_seconds, otp.cleanup_expired),
            _Job("old_sessions", config.old_sessions_interval_seconds, sessions.purge_old),
            _Job("rate_limiter", config.expired_otps_interval_seconds, rate_limiter.sweep),
            _Job("permission_cache", config.expired_otps_interval_seconds, permission_cache.sweep),
        ]
        self._sessions = sessions
        self._otp = otp
        self._worker_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self) -> None:
        """Start background loop if not already running."""
        if self.running:
            return
        self._stop_event.clear()
        self._worker_task = asyncio.create_task(self._worker_loop())
        LOGGER.info("cleanup_service_started")

    async def stop(self) -> None:
        """Stop background loop gracefully."""
        self._stop_event.set()
        if self._worker_task:
            await self._worker_task
            self._worker_task = None
        LOGGER.info("cleanup_service_stopped")

    def _run_job(self, job: _Job) -> int:
        try:
            job.last_result = int(job.run() or 0)
        except Exception:
            LOGGER.exception("cleanup_job_failed", extra={"reason": job.name})
            job.last_result = 0
        job.last_run_at = self._clock()
        if job.last_result:
            LOGGER.info("cleanup_job_completed", extra={"reason": f"{job.name}={job.last_result}"})
        return job.last_result

    def run_due(self) -> dict[str, int]:
        now = self._clock()
        return {
            job.name: self._run_job(job)
            for job in self._jobs
            if now - job.last_run_at >= job.interval_seconds
        }

    def run_once(self) -> dict[str, int]:
        """Run every job immediately regardless of schedule."""
        return {job.name: self._run_job(job) for job in self._jobs}

    def stats(self) -> dict[str, Any]:
        return {
            "sessions": self._sessions.stats(),
            "otps": self._otp.stats(),
            "jobs": {
                job.name: {
                    "interval_seconds": job.interval_seconds,
                    "last_run_at": int(job.last_run_at) or None,
                    "last_result": job.last_result,
                }
                for job in self._jobs
            },
            "running": self.running,
        }

    async def _worker_loop(self) -> None:
        """Run due jobs until the stop event is set."""
        poll_seconds = max(1, min(job.interval_seconds for job in self._jobs))
        while not self._stop_event.is_set():
            await asyncio.to_thread(self.run_due)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=poll_seconds)
            except asyncio.TimeoutError:
                continue
