"""Attempt record persistence (in-memory, optionally mirrored to a JSON file)."""
import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable

from loginguard.domain.attempt import AttemptRecord
from loginguard.domain.enums import IdentifierType
from loginguard.domain.errors import StoreUnavailable

log = logging.getLogger("loginguard.store")

LOCK_STRIPES = 64


class AttemptRepository:
    """
    Process-local attempt store.

    Read-modify-write on one key is serialized by a striped lock (a fixed
    pool indexed by key hash, so lock memory does not grow with the number
    of identifiers). A table lock guards the dict and the JSON snapshot.
    Every write reaches the file before it reaches the dict: a failed write
    leaves the in-memory state unchanged. With ``data_path=None`` the store
    lives only in memory.
    """

    def __init__(self, data_path: str | None = None, lock_timeout: float = 5.0):
        self._data_path = data_path
        self._lock_timeout = lock_timeout
        self._records: Dict[tuple, AttemptRecord] = {}
        self._stripes = [threading.Lock() for _ in range(LOCK_STRIPES)]
        self._table_lock = threading.RLock()
        self._load()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, identifier: str, identifier_type: IdentifierType) -> AttemptRecord | None:
        with self._table():
            return self._records.get((identifier, identifier_type))

    def list_blocked(self, now: datetime) -> list:
        """Records whose block is still running at ``now``, soonest expiry first."""
        with self._table():
            rows = [r for r in self._records.values() if r.is_blocked_at(now)]
        return sorted(rows, key=lambda r: r.blocked_until)

    def count(self) -> int:
        with self._table():
            return len(self._records)

    def check_health(self) -> bool:
        return True

    @property
    def lock_count(self) -> int:
        return len(self._stripes)

    def stripe_of(self, identifier: str, identifier_type: IdentifierType) -> int:
        return hash((identifier, identifier_type)) % len(self._stripes)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def update(
        self,
        identifier: str,
        identifier_type: IdentifierType,
        mutate: Callable[[AttemptRecord | None], AttemptRecord],
    ) -> AttemptRecord:
        """Atomically replace the record for a key with ``mutate(prior)``."""
        key = (identifier, identifier_type)
        with self._key(key):
            with self._table():
                prior = self._records.get(key)
            updated = mutate(prior)
            stored = updated.with_version((prior.version if prior else 0) + 1)
            with self._table():
                self._commit(upserts={key: stored})
        return stored

    def reset(self, identifier: str, identifier_type: IdentifierType, now: datetime) -> bool:
        """Clear failures and block for an existing key. Absent keys are left absent."""
        key = (identifier, identifier_type)
        with self._key(key):
            with self._table():
                prior = self._records.get(key)
                if prior is None:
                    return False
                self._commit(upserts={key: prior.with_reset(now).with_version(prior.version + 1)})
        return True

    def delete_stale(self, cutoff: datetime, now: datetime, include_expired: bool = False) -> int:
        """Delete unblocked records last touched before ``cutoff``.

        All key locks are held while the predicate is evaluated, so a record
        that gets blocked concurrently is either seen blocked or written
        after the sweep.
        """
        with self._all_keys():
            with self._table():
                doomed = [
                    key for key, record in self._records.items()
                    if _sweepable(record, cutoff, now, include_expired)
                ]
                if doomed:
                    self._commit(removals=doomed)
        return len(doomed)

    def delete_all(self, identifier_type: IdentifierType | None = None) -> int:
        with self._all_keys():
            with self._table():
                doomed = [
                    k for k in self._records
                    if identifier_type is None or k[1] is identifier_type
                ]
                self._commit(removals=doomed)
        return len(doomed)

    def _commit(self, upserts: Dict[tuple, AttemptRecord] | None = None, removals: Iterable[tuple] = ()) -> None:
        """Persist the changed table, then swap it in. Caller holds the table lock."""
        merged = dict(self._records)
        merged.update(upserts or {})
        for key in removals:
            merged.pop(key, None)
        self._persist(merged)
        self._records = merged

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _table(self):
        if not self._table_lock.acquire(timeout=self._lock_timeout):
            raise StoreUnavailable("Timed out waiting for the attempt store.")
        try:
            yield
        finally:
            self._table_lock.release()

    @contextmanager
    def _key(self, key: tuple):
        lock = self._stripes[hash(key) % len(self._stripes)]
        if not lock.acquire(timeout=self._lock_timeout):
            raise StoreUnavailable(f"Timed out waiting for attempt record {key[1].value}:{key[0]}.")
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def _all_keys(self):
        # Fixed order so two sweeps cannot deadlock each other.
        held = []
        try:
            for lock in self._stripes:
                if not lock.acquire(timeout=self._lock_timeout):
                    raise StoreUnavailable("Timed out waiting for the attempt store.")
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()

    # ------------------------------------------------------------------
    # File mirror
    # ------------------------------------------------------------------

    def _persist(self, records: Dict[tuple, AttemptRecord]) -> None:
        """Write ``records`` to the JSON file. Caller holds the table lock."""
        if not self._data_path:
            return
        directory = os.path.dirname(self._data_path)
        data = [r.to_dict() for r in records.values()]
        tmp_path = f"{self._data_path}.tmp"
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            # Atomic replace
            os.replace(tmp_path, self._data_path)
        except OSError as exc:
            raise StoreUnavailable(f"Could not write attempt store {self._data_path}: {exc}") from exc

    def _load(self) -> None:
        if not self._data_path or not os.path.exists(self._data_path):
            return
        try:
            with open(self._data_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as exc:
            log.warning("Ignoring unreadable attempt store %s: %s", self._data_path, exc)
            return
        for row in data:
            record = AttemptRecord.from_dict(row)
            self._records[record.key] = record


def _sweepable(record: AttemptRecord, cutoff: datetime, now: datetime, include_expired: bool) -> bool:
    if record.last_attempt is None or record.last_attempt >= cutoff:
        return False
    if record.blocked_until is None:
        return True
    return include_expired and not record.is_blocked_at(now)
