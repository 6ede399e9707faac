"""Durable key-value stores and the typed event store view over them.

Every backend stores JSON-serializable values under stable string keys. A
missing key is never an error: readers get the caller's default. Writers that
depend on the current value go through ``update`` so the read and the write
happen under one lock against the latest persisted value, not a stale cache.
"""
from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import portalocker
from sqlalchemy import Column, DateTime, String, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from werkzeug.utils import secure_filename

from .config import KNOWN_IDS_KEY, LOG_CAP, NOTIFICATIONS_KEY, TOKEN_KEY, Settings
from .errors import MalformedEventError, StoreWriteError
from .models import NotificationEvent

LOGGER = logging.getLogger(__name__)

Updater = Callable[[Any], Any]


def fingerprint(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


class KeyValueStore:
    """Interface shared by the store backends."""

    def __init__(self) -> None:
        self._local_writes: Dict[str, str] = {}
        self._local_lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError

    def update(self, key: str, updater: Updater, default: Any = None) -> Any:
        """Atomically replace ``key`` with ``updater(current)`` and return it."""
        raise NotImplementedError

    def snapshot(self, keys: Optional[Iterable[str]] = None) -> Dict[str, str]:
        """Fingerprints of the current values, used to detect foreign writes."""
        wanted = list(keys) if keys is not None else self.keys()
        return {key: fingerprint(self.get(key)) for key in wanted}

    def last_local_write(self, key: str) -> Optional[str]:
        with self._local_lock:
            return self._local_writes.get(key)

    def _record_local(self, key: str, value: Any) -> None:
        with self._local_lock:
            self._local_writes[key] = fingerprint(value)

    def close(self) -> None:
        pass


class MemoryStore(KeyValueStore):
    """Process-local store; values are copied in and out like a real backend."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self._data: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self._data[key] = json.dumps(value)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            raw = self._data.get(key)
        if raw is None:
            return copy.deepcopy(default)
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = json.dumps(value)
            self._record_local(key, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)
            self._record_local(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)

    def update(self, key: str, updater: Updater, default: Any = None) -> Any:
        with self._lock:
            value = updater(self.get(key, default))
            self.set(key, value)
            return value

    def write_external(self, key: str, value: Any) -> None:
        """Write as another execution context would (not recorded as local)."""
        with self._lock:
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = json.dumps(value)


class JsonFileStore(KeyValueStore):
    """One JSON file per key inside ``directory``, shared between processes."""

    def __init__(self, directory: str) -> None:
        super().__init__()
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def path_for(self, key: str) -> str:
        safe = secure_filename(key)
        if not safe or safe != key:
            raise ValueError(f"invalid store key: {key!r}")
        return os.path.join(self.directory, f"{safe}.json")

    @contextlib.contextmanager
    def with_json_lock(self, key: str):
        lock_path = f"{self.path_for(key)}.lock"
        lock_file = open(lock_path, "a+")
        try:
            portalocker.lock(lock_file, portalocker.LOCK_EX)
            try:
                yield
            finally:
                portalocker.unlock(lock_file)
        finally:
            lock_file.close()

    def _read(self, key: str, default: Any) -> Any:
        path = self.path_for(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return copy.deepcopy(default)
        except json.JSONDecodeError:
            LOGGER.warning("Store file %s is not valid JSON; using default", path)
            return copy.deepcopy(default)
        except OSError as exc:
            LOGGER.warning("Could not read store file %s: %s", path, exc)
            return copy.deepcopy(default)

    def _write_atomic(self, key: str, value: Any) -> None:
        path = self.path_for(key)
        try:
            fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=self.directory)
        except OSError as exc:
            raise StoreWriteError(key, exc) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as exc:
            raise StoreWriteError(key, exc) from exc
        finally:
            try:
                os.remove(tmp)
            except OSError:
                pass
        self._record_local(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        try:
            with self.with_json_lock(key):
                return self._read(key, default)
        except OSError as exc:
            LOGGER.warning("Could not lock store key %s: %s", key, exc)
            return self._read(key, default)

    def set(self, key: str, value: Any) -> None:
        try:
            with self.with_json_lock(key):
                self._write_atomic(key, value)
        except OSError as exc:
            raise StoreWriteError(key, exc) from exc

    def delete(self, key: str) -> None:
        try:
            with self.with_json_lock(key):
                try:
                    os.remove(self.path_for(key))
                except FileNotFoundError:
                    pass
                self._record_local(key, None)
        except OSError as exc:
            raise StoreWriteError(key, exc) from exc

    def keys(self) -> List[str]:
        try:
            names = os.listdir(self.directory)
        except OSError:
            return []
        return sorted(
            name[: -len(".json")]
            for name in names
            if name.endswith(".json") and not name.startswith(".tmp-")
        )

    def update(self, key: str, updater: Updater, default: Any = None) -> Any:
        try:
            with self.with_json_lock(key):
                value = updater(self._read(key, default))
                self._write_atomic(key, value)
                return value
        except OSError as exc:
            raise StoreWriteError(key, exc) from exc


Base = declarative_base()


class KeyValueEntry(Base):
    __tablename__ = "notifier_kv"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class SqlAlchemyStore(KeyValueStore):
    """Key-value rows in a relational database reachable by several processes."""

    def __init__(self, url: str) -> None:
        super().__init__()
        engine_kwargs: Dict[str, Any] = {"future": True}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        self.engine = create_engine(url, **engine_kwargs)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        try:
            with self.Session() as session:
                row = session.get(KeyValueEntry, key)
                if row is None:
                    return copy.deepcopy(default)
                return json.loads(row.value)
        except (SQLAlchemyError, json.JSONDecodeError) as exc:
            LOGGER.warning("Could not read store key %s: %s", key, exc)
            return copy.deepcopy(default)

    def _put(self, session, key: str, value: Any) -> None:
        row = session.get(KeyValueEntry, key)
        payload = json.dumps(value, ensure_ascii=False)
        now = datetime.now(timezone.utc)
        if row is None:
            session.add(KeyValueEntry(key=key, value=payload, updated_at=now))
        else:
            row.value = payload
            row.updated_at = now

    def set(self, key: str, value: Any) -> None:
        try:
            with self._lock, self.Session.begin() as session:
                self._put(session, key, value)
        except (SQLAlchemyError, TypeError, ValueError) as exc:
            raise StoreWriteError(key, exc) from exc
        self._record_local(key, value)

    def delete(self, key: str) -> None:
        try:
            with self._lock, self.Session.begin() as session:
                row = session.get(KeyValueEntry, key)
                if row is not None:
                    session.delete(row)
        except SQLAlchemyError as exc:
            raise StoreWriteError(key, exc) from exc
        self._record_local(key, None)

    def keys(self) -> List[str]:
        try:
            with self.Session() as session:
                return sorted(session.scalars(select(KeyValueEntry.key)).all())
        except SQLAlchemyError as exc:
            LOGGER.warning("Could not list store keys: %s", exc)
            return []

    def update(self, key: str, updater: Updater, default: Any = None) -> Any:
        try:
            with self._lock, self.Session.begin() as session:
                row = session.execute(
                    select(KeyValueEntry).where(KeyValueEntry.key == key).with_for_update()
                ).scalar_one_or_none()
                current = json.loads(row.value) if row is not None else copy.deepcopy(default)
                value = updater(current)
                self._put(session, key, value)
        except (SQLAlchemyError, TypeError, ValueError) as exc:
            raise StoreWriteError(key, exc) from exc
        self._record_local(key, value)
        return value

    def close(self) -> None:
        self.engine.dispose()


def open_store(settings: Settings) -> KeyValueStore:
    backend = settings.store_backend
    if backend == "memory":
        return MemoryStore()
    if backend == "sql":
        return SqlAlchemyStore(settings.database_url or "sqlite://")
    if backend != "json":
        LOGGER.warning("Unknown store backend %r; falling back to json files", backend)
    return JsonFileStore(settings.data_dir)


def _entries(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [entry for entry in raw if isinstance(entry, dict) and entry.get("id")]


class EventStore:
    """Typed access to the known-id set, the notification log and the token."""

    def __init__(self, backend: KeyValueStore, cap: int = LOG_CAP) -> None:
        self.backend = backend
        self.cap = cap

    def known_ids(self) -> Set[str]:
        raw = self.backend.get(KNOWN_IDS_KEY, [])
        if not isinstance(raw, list):
            LOGGER.warning("Known-id set has unexpected type %s; treating as empty", type(raw).__name__)
            return set()
        return {str(item) for item in raw if item}

    def add_known_ids(self, ids: Iterable[str]) -> Set[str]:
        new_ids = [i for i in ids if i]

        def merge(current: Any) -> List[str]:
            existing = [str(i) for i in current] if isinstance(current, list) else []
            seen = set(existing)
            for event_id in new_ids:
                if event_id not in seen:
                    existing.append(event_id)
                    seen.add(event_id)
            return existing

        return set(self.backend.update(KNOWN_IDS_KEY, merge, []))

    def load_log(self) -> List[NotificationEvent]:
        raw = self.backend.get(NOTIFICATIONS_KEY, [])
        events: List[NotificationEvent] = []
        for entry in raw if isinstance(raw, list) else []:
            try:
                events.append(NotificationEvent.from_dict(entry))
            except MalformedEventError as exc:
                LOGGER.warning("Dropping stored notification: %s", exc)
        return events

    def prepend_log(self, events: List[NotificationEvent]) -> List[NotificationEvent]:
        """Put ``events`` (newest first) at the head of the log and apply the cap."""
        fresh = [event.to_dict() for event in events]
        fresh_ids = {entry["id"] for entry in fresh}

        def merge(current: Any) -> List[Dict[str, Any]]:
            kept = [entry for entry in _entries(current) if entry["id"] not in fresh_ids]
            return (fresh + kept)[: self.cap]

        return [NotificationEvent.from_dict(entry) for entry in self.backend.update(NOTIFICATIONS_KEY, merge, [])]

    def remove_from_log(self, event_id: str) -> List[NotificationEvent]:
        def merge(current: Any) -> List[Dict[str, Any]]:
            return [entry for entry in _entries(current) if entry["id"] != event_id]

        return [NotificationEvent.from_dict(entry) for entry in self.backend.update(NOTIFICATIONS_KEY, merge, [])]

    def token(self) -> Optional[str]:
        value = self.backend.get(TOKEN_KEY)
        return str(value) if value else None

    def set_token(self, token: Optional[str]) -> None:
        if token:
            self.backend.set(TOKEN_KEY, token)
        else:
            self.backend.delete(TOKEN_KEY)


__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "SqlAlchemyStore",
    "EventStore",
    "open_store",
    "fingerprint",
]
