"""Cross-context synchronization over the shared durable store.

Several execution contexts (processes, browser-tab bridges) share one store.
``StoreWatcher`` turns writes made by *other* contexts into ``store_changed``
signals, the way a browser fires ``storage`` events only in the tabs that did
not write. ``CrossTabSynchronizer`` reacts to those signals. Same store only;
nothing here crosses devices.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional

from .config import KNOWN_IDS_KEY, LOGOUT_KEY, NOTIFICATIONS_KEY, PREFERENCE_KEYS
from .engine import MergeEngine
from .preferences import Preferences
from .scheduler import Scheduler, TaskHandle
from .signals import Subscriptions, UiSignals
from .store import KeyValueStore

LOGGER = logging.getLogger(__name__)

WATCHED_KEYS = (LOGOUT_KEY, KNOWN_IDS_KEY, NOTIFICATIONS_KEY, *sorted(PREFERENCE_KEYS))


class StoreWatcher:
    def __init__(
        self,
        store: KeyValueStore,
        signals: UiSignals,
        scheduler: Scheduler,
        *,
        keys: Iterable[str] = WATCHED_KEYS,
        interval: float = 1.0,
    ) -> None:
        self.store = store
        self.signals = signals
        self.scheduler = scheduler
        self.keys = tuple(keys)
        self.interval = interval
        self._lock = threading.Lock()
        self._seen: Dict[str, str] = {}
        self._handle: Optional[TaskHandle] = None

    def start(self) -> None:
        with self._lock:
            if self._handle is not None:
                return
            self._seen = self.store.snapshot(self.keys)
            self._handle = self.scheduler.call_repeating(self.interval, self.poll)

    def stop(self) -> None:
        with self._lock:
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    def poll(self) -> int:
        """Compare the store with the last snapshot; returns signals sent."""
        current = self.store.snapshot(self.keys)
        changes = []
        with self._lock:
            for key in self.keys:
                old, new = self._seen.get(key), current.get(key)
                if old == new:
                    continue
                self._seen[key] = new
                if new == self.store.last_local_write(key):
                    continue
                changes.append((key, old, new))
        for key, old, new in changes:
            LOGGER.debug("Store key %s changed in another context", key)
            self.signals.store_changed.send(
                self.store,
                key=key,
                old=json.loads(old) if old is not None else None,
                new=json.loads(new) if new is not None else None,
            )
        return len(changes)


class CrossTabSynchronizer:
    """Applies foreign logout and preference writes to this context."""

    def __init__(
        self,
        store: KeyValueStore,
        signals: UiSignals,
        *,
        on_logout: Callable[[], None],
        preferences: Optional[Preferences] = None,
        engine: Optional[MergeEngine] = None,
    ) -> None:
        self.store = store
        self.signals = signals
        self.on_logout = on_logout
        self.preferences = preferences
        self.engine = engine
        self._subscriptions = Subscriptions()

    def attach(self) -> None:
        if not self._subscriptions:
            self._subscriptions.connect(self.signals.store_changed, self._on_store_changed)

    def detach(self) -> None:
        self._subscriptions.disconnect_all()

    def broadcast_logout(self) -> None:
        """Tell every other context sharing the store to log out."""
        self.store.set(LOGOUT_KEY, int(time.time() * 1000))

    def _on_store_changed(self, sender, key: str = "", old: Any = None, new: Any = None, **kwargs) -> None:
        try:
            if key == LOGOUT_KEY:
                if new is not None:
                    LOGGER.info("Logout broadcast received from another context")
                    self.on_logout()
            elif key in PREFERENCE_KEYS:
                if self.preferences is not None:
                    self.preferences.reload(key)
            elif key in (KNOWN_IDS_KEY, NOTIFICATIONS_KEY):
                if self.engine is not None:
                    self.engine.reload()
        except Exception:
            LOGGER.exception("Failed to apply store change for %s", key)


__all__ = ["StoreWatcher", "CrossTabSynchronizer", "WATCHED_KEYS"]
