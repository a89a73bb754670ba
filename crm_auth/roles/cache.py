"""TTL cache of resolved permission sets."""

from __future__ import annotations

import time
from threading import Lock
from typing import Callable

from crm_auth.roles.models import PermissionSet


class PermissionCache:
    """Role name to ``PermissionSet`` with a fixed TTL from insertion."""

    def __init__(self, ttl_seconds: int, *, clock: Callable[[], float] = time.time) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, tuple[PermissionSet, float]] = {}

    def get(self, role_name: str) -> PermissionSet | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(role_name)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= now:
                del self._entries[role_name]
                return None
            return value

    def set(self, role_name: str, value: PermissionSet) -> None:
        with self._lock:
            self._entries[role_name] = (value, self._clock() + self._ttl_seconds)

    def invalidate(self, role_name: str) -> None:
        with self._lock:
            self._entries.pop(role_name, None)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [name for name, (_, expires_at) in self._entries.items() if expires_at <= now]
            for name in stale:
                del self._entries[name]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
