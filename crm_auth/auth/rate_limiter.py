"""Fixed-window request limiter for the login and code endpoints."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from crm_auth.auth.errors import RateLimitedError
from crm_auth.core.config import RateLimitRule


@dataclass
class _Window:
    count: int
    reset_at: float


def limiter_key(rule: RateLimitRule, client_ip: str, subject: str = "") -> str:
    """Composite key of endpoint, caller address and (when known) identity or email."""
    return f"{rule.name}:{client_ip.strip() or 'unknown'}:{subject.strip().lower()}"


class RateLimiter:
    """In-process counters. Not shared across instances and lost on restart."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = Lock()
        self._windows: dict[str, _Window] = {}

    def check(self, key: str, rule: RateLimitRule) -> None:
        """Count one request or raise ``RateLimitedError`` without counting it."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                self._windows[key] = _Window(count=1, reset_at=now + rule.window_seconds)
                return
            if window.count >= rule.max_attempts:
                retry_after = max(1, math.ceil(window.reset_at - now))
                raise RateLimitedError(
                    retry_after,
                    f"Too many {rule.name.replace('_', ' ')} attempts. Retry after {retry_after} seconds.",
                )
            window.count += 1

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def sweep(self) -> int:
        """Drop elapsed windows and return how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [key for key, window in self._windows.items() if window.reset_at <= now]
            for key in stale:
                del self._windows[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
