"""Persistent store bootstrap: MongoDB primary with JSON file-store fallback."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterator

import pymongo
from pymongo.errors import PyMongoError

from crm_auth.core.config import StoreConfig

LOGGER = logging.getLogger(__name__)

Document = dict[str, Any]
Matcher = Callable[[Document], bool]


class StoreUnavailableError(RuntimeError):
    """Raised when the persistent store cannot serve a request within its timeout."""


@contextmanager
def mongo_errors(operation: str) -> Iterator[None]:
    """Translate driver failures into ``StoreUnavailableError``."""
    try:
        yield
    except PyMongoError as exc:
        LOGGER.error("store_unavailable", extra={"reason": operation})
        raise StoreUnavailableError(operation) from exc


def connect_mongo_database(config: StoreConfig) -> Any | None:
    """Return a MongoDB database handle, or ``None`` to use the file store."""
    if not config.mongodb_uri:
        return None
    try:
        client: Any = pymongo.MongoClient(
            config.mongodb_uri,
            serverSelectionTimeoutMS=config.timeout_ms,
            connectTimeoutMS=config.timeout_ms,
            socketTimeoutMS=config.timeout_ms,
            timeoutMS=config.timeout_ms,
            tz_aware=True,
        )
        client.admin.command("ping")
    except PyMongoError:
        LOGGER.warning("mongo_unreachable_using_file_store")
        return None
    return client[config.mongodb_db]


class JsonCollection:
    """Lock-guarded JSON list file used when MongoDB is not configured.

    Every mutation is a read-modify-write under one in-process lock, which
    makes conditional updates atomic within a single process only.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    def _read(self) -> list[Document]:
        """Read list payload from JSON file with empty fallback."""
        if not self._path.exists():
            return []
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception:
            return []
        return [row for row in payload if isinstance(row, dict)] if isinstance(payload, list) else []

    def _write(self, items: list[Document]) -> None:
        """Persist list payload to JSON file."""
        self._path.write_text(json.dumps(items, ensure_ascii=False, indent=2), encoding="utf-8")

    def find_one(self, match: Matcher) -> Document | None:
        with self._lock:
            for row in self._read():
                if match(row):
                    return row
        return None

    def find(self, match: Matcher) -> list[Document]:
        with self._lock:
            return [row for row in self._read() if match(row)]

    def count(self, match: Matcher) -> int:
        return len(self.find(match))

    def insert(self, doc: Document) -> None:
        with self._lock:
            items = self._read()
            items.append(doc)
            self._write(items)

    def insert_unique(self, match: Matcher, doc: Document) -> bool:
        """Insert ``doc`` unless a row already matches; returns whether it was added."""
        with self._lock:
            items = self._read()
            if any(match(row) for row in items):
                return False
            items.append(doc)
            self._write(items)
        return True

    def supersede(self, match: Matcher, changes: Document, doc: Document) -> int:
        """Apply ``changes`` to matching rows and append ``doc`` under one lock."""
        with self._lock:
            items = self._read()
            superseded = 0
            for row in items:
                if match(row):
                    row.update(changes)
                    superseded += 1
            items.append(doc)
            self._write(items)
        return superseded

    def upsert(self, match: Matcher, doc: Document) -> None:
        with self._lock:
            items = [row for row in self._read() if not match(row)]
            items.append(doc)
            self._write(items)

    def update(
        self,
        match: Matcher,
        changes: Document | Callable[[Document], None],
        *,
        many: bool = False,
    ) -> list[Document]:
        """Apply ``changes`` (a dict or an in-place mutator) to matching rows."""
        updated: list[Document] = []
        with self._lock:
            items = self._read()
            for row in items:
                if not match(row):
                    continue
                if callable(changes):
                    changes(row)
                else:
                    row.update(changes)
                updated.append(dict(row))
                if not many:
                    break
            if updated:
                self._write(items)
        return updated

    def delete(self, match: Matcher) -> int:
        with self._lock:
            items = self._read()
            kept = [row for row in items if not match(row)]
            if len(kept) != len(items):
                self._write(kept)
        return len(items) - len(kept)
