# app/services/store.py
"""
Key-value persistence over named collections.

Collections: creators, api_keys, content, payment_intents, access_grants,
sponsorships. Records are plain JSON dicts keyed by id. Every write is
flushed to disk before the call returns; with path=None the store is
memory-only (tests, ephemeral deployments).

Writes are serialized by a single re-entrant lock. Callers that need
check-then-act semantics across I/O (e.g. sponsorship) take key_lock()
for the key and use create_if_absent() / update(expected=...) as the
conditional write.
"""
import copy
import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

COLLECTIONS = (
    "creators",
    "api_keys",
    "content",
    "payment_intents",
    "access_grants",
    "sponsorships",
)


class RecordNotFound(KeyError):
    pass


class RecordConflict(Exception):
    """A conditional write found the record in an unexpected state."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _KeyLock:
    """A per-key lock and the number of callers holding or waiting on it."""

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class JsonStore:

    def __init__(self, path: Optional[str] = None):
        self._path = Path(path) if path else None
        self._lock = threading.RLock()
        self._key_locks: Dict[str, _KeyLock] = {}
        self._key_locks_guard = threading.Lock()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = self._load()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def _empty_state(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        return {name: {} for name in COLLECTIONS}

    def _load(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        data = self._empty_state()
        if self._path is None or not self._path.exists():
            return data

        with open(self._path, "r") as f:
            stored = json.load(f)

        for name in COLLECTIONS:
            data[name] = stored.get(name) or {}
        logger.info(f"Loaded store from {self._path}")
        return data

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._data, f, indent=2)
        os.replace(tmp_path, self._path)

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        if name not in self._data:
            raise KeyError(f"Unknown collection: {name}")
        return self._data[name]

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._collection(collection).get(key)
            return copy.deepcopy(record) if record is not None else None

    def list(
        self,
        collection: str,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
        **filters: Any
    ) -> List[Dict[str, Any]]:
        """List records matching every keyword filter (field == value) and the predicate."""
        with self._lock:
            records = list(self._collection(collection).values())

        result = []
        for record in records:
            if any(record.get(field) != value for field, value in filters.items()):
                continue
            if predicate is not None and not predicate(record):
                continue
            result.append(copy.deepcopy(record))
        return result

    def find_one(self, collection: str, **filters: Any) -> Optional[Dict[str, Any]]:
        matches = self.list(collection, **filters)
        return matches[0] if matches else None

    def create(self, collection: str, key: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace a record. Adds created_at/updated_at."""
        with self._lock:
            now = utc_now_iso()
            stored = {**record, "created_at": record.get("created_at") or now, "updated_at": now}
            self._collection(collection)[key] = stored
            self._save()
            return copy.deepcopy(stored)

    def create_if_absent(self, collection: str, key: str, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert only if the key is free. Returns None when a record already exists."""
        with self._lock:
            if key in self._collection(collection):
                return None
            return self.create(collection, key, record)

    def update(
        self,
        collection: str,
        key: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Atomically apply changes to a record.

        Args:
            expected: Field values the record must currently hold (compare-and-swap)

        Raises:
            RecordNotFound: If the record does not exist
            RecordConflict: If an expected field does not match
        """
        with self._lock:
            records = self._collection(collection)
            current = records.get(key)
            if current is None:
                raise RecordNotFound(f"{collection}/{key}")

            for field, value in (expected or {}).items():
                if current.get(field) != value:
                    raise RecordConflict(
                        f"{collection}/{key}: expected {field}={value!r}, found {current.get(field)!r}"
                    )

            updated = {**current, **changes, "updated_at": utc_now_iso()}
            records[key] = updated
            self._save()
            return copy.deepcopy(updated)

    @property
    def held_key_locks(self) -> int:
        """Number of keys currently locked or waited on."""
        with self._key_locks_guard:
            return len(self._key_locks)

    @contextmanager
    def key_lock(self, collection: str, key: str) -> Iterator[None]:
        """
        Serialize check-and-record sequences for one key.

        Lock entries are reference counted and dropped once the last holder
        or waiter leaves, so only keys in use stay in memory.
        """
        lock_name = f"{collection}:{key}"
        with self._key_locks_guard:
            entry = self._key_locks.get(lock_name)
            if entry is None:
                entry = self._key_locks[lock_name] = _KeyLock()
            entry.users += 1

        try:
            with entry.lock:
                yield
        finally:
            with self._key_locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._key_locks[lock_name]
