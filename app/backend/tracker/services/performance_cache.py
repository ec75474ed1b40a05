"""Single-slot cache for computed performance reports."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tracker.core.clock import Clock, SystemClock
from tracker.core.errors import CacheStoreError
from tracker.models.entities import CacheRecord
from tracker.services.performance_models import CacheEntry, PerformanceSummaries

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=5)


def fingerprint(ids: Iterable[UUID | str]) -> str:
    """Order-independent digest of an id set."""

    return ",".join(sorted(str(item) for item in ids))


# ---------- Persistence stores ----------
class CacheStore(Protocol):
    """Key-value persistence; failures raise ``CacheStoreError``."""

    def read(self, key: str) -> bytes | None: ...

    def write(self, key: str, payload: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryCacheStore:
    def __init__(self) -> None:
        self._items: dict[str, bytes] = {}

    def read(self, key: str) -> bytes | None:
        return self._items.get(key)

    def write(self, key: str, payload: bytes) -> None:
        self._items[key] = payload

    def delete(self, key: str) -> None:
        self._items.pop(key, None)


class SqlCacheStore:
    """Stores payloads in the ``cache_records`` table so they survive restarts."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def read(self, key: str) -> bytes | None:
        try:
            with self.session_factory() as session:
                row = session.get(CacheRecord, key)
                return bytes(row.payload) if row is not None else None
        except SQLAlchemyError as exc:
            raise CacheStoreError(f"Reading cache record {key!r} failed: {exc}") from exc

    def write(self, key: str, payload: bytes) -> None:
        try:
            with self.session_factory() as session:
                session.merge(CacheRecord(key=key, payload=payload, updated_at=datetime.now(timezone.utc)))
                session.commit()
        except SQLAlchemyError as exc:
            raise CacheStoreError(f"Writing cache record {key!r} failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            with self.session_factory() as session:
                session.execute(delete(CacheRecord).where(CacheRecord.key == key))
                session.commit()
        except SQLAlchemyError as exc:
            raise CacheStoreError(f"Deleting cache record {key!r} failed: {exc}") from exc


# ---------- Cache ----------
@dataclass(slots=True, frozen=True)
class CacheStats:
    size_bytes: int
    age_seconds: float | None


class PerformanceCache:
    """Holds the most recent complete summary set for one report.

    An entry is served only while it is younger than the TTL and was computed
    from the same project and user id sets. The in-memory slot is
    authoritative; the store is a best-effort durable copy consulted when the
    slot is empty (e.g. after a restart).
    """

    def __init__(
        self,
        store: CacheStore | None = None,
        *,
        report_key: str = "performance",
        ttl: timedelta = DEFAULT_TTL,
        clock: Clock | None = None,
    ) -> None:
        self.store = store if store is not None else InMemoryCacheStore()
        self.report_key = report_key
        self.storage_key = f"performance_cache:{report_key}"
        self.ttl = ttl
        self.clock = clock or SystemClock()
        self._entry: CacheEntry | None = None
        self._lock = threading.Lock()

    def is_valid(
        self,
        entry: CacheEntry,
        project_ids: Iterable[UUID | str],
        user_ids: Iterable[UUID | str],
    ) -> bool:
        age = self.clock.now() - entry.timestamp
        return (
            age < self.ttl
            and entry.project_fingerprint == fingerprint(project_ids)
            and entry.user_fingerprint == fingerprint(user_ids)
        )

    def get(self, project_ids: Iterable[UUID | str], user_ids: Iterable[UUID | str]) -> CacheEntry | None:
        with self._lock:
            entry = self._current()
            if entry is None:
                return None
            if self.is_valid(entry, project_ids, user_ids):
                logger.debug("Performance cache hit for %s", self.report_key)
                return entry
            logger.debug("Performance cache for %s expired or invalid", self.report_key)
            self._discard()
            return None

    def put(
        self,
        summaries: PerformanceSummaries,
        project_ids: Iterable[UUID | str],
        user_ids: Iterable[UUID | str],
    ) -> CacheEntry:
        entry = CacheEntry(
            summaries=summaries,
            timestamp=self.clock.now(),
            project_fingerprint=fingerprint(project_ids),
            user_fingerprint=fingerprint(user_ids),
        )
        with self._lock:
            if self._entry is not None and self._entry.timestamp > entry.timestamp:
                logger.debug("Discarding performance entry older than the cached one")
                return self._entry
            self._entry = entry
            try:
                self.store.write(self.storage_key, self._serialize(entry))
            except CacheStoreError as exc:
                logger.warning("Performance cache kept in memory only: %s", exc)
        return entry

    def clear(self) -> None:
        with self._lock:
            self._discard()

    def stats(self) -> CacheStats:
        with self._lock:
            entry = self._current()
        if entry is None:
            return CacheStats(size_bytes=0, age_seconds=None)
        age = self.clock.now() - entry.timestamp
        return CacheStats(size_bytes=len(self._serialize(entry)), age_seconds=age.total_seconds())

    # Callers hold self._lock.
    def _current(self) -> CacheEntry | None:
        if self._entry is None:
            self._entry = self._load()
        return self._entry

    def _load(self) -> CacheEntry | None:
        try:
            raw = self.store.read(self.storage_key)
        except CacheStoreError as exc:
            logger.warning("Performance cache store unreadable: %s", exc)
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Discarding malformed performance cache entry: %s", exc.errors()[:1])
            self._discard()
            return None

    def _discard(self) -> None:
        self._entry = None
        try:
            self.store.delete(self.storage_key)
        except CacheStoreError as exc:
            logger.warning("Performance cache store not cleared: %s", exc)

    @staticmethod
    def _serialize(entry: CacheEntry) -> bytes:
        return entry.model_dump_json().encode("utf-8")
