"""Merge/dedup engine: the at-most-once core of the notifier.

An event id enters the known set (and is persisted) before its alert is
emitted, so a crash or a failed alert between the two can only lose a toast,
never produce a second one. The unread counter lives only in this object; each
execution context resets its own badge, while the known set and the log are
shared through the store.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable, List, Optional, Set

from .channels import AlertEmitter, AlertListener
from .errors import StoreWriteError
from .messages import render
from .models import EventKind, NotificationEvent
from .store import EventStore

LOGGER = logging.getLogger(__name__)


def _prepend_capped(log: List[NotificationEvent], fresh: List[NotificationEvent], cap: int) -> List[NotificationEvent]:
    fresh_ids = {event.id for event in fresh}
    return (fresh + [event for event in log if event.id not in fresh_ids])[:cap]


class MergeEngine:
    def __init__(
        self,
        store: EventStore,
        emitter: Optional[AlertEmitter] = None,
        language: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.emitter = emitter or AlertEmitter()
        self._language = language or (lambda: "en")
        self._lock = threading.Lock()
        self._known: Set[str] = store.known_ids()
        self._log: List[NotificationEvent] = store.load_log()
        self._unread = 0

    # -- queries ---------------------------------------------------------

    def get_unread_count(self) -> int:
        with self._lock:
            return self._unread

    def get_log(self) -> List[NotificationEvent]:
        with self._lock:
            return list(self._log)

    def is_known(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._known

    def on_alert(self, callback: AlertListener) -> Callable[[], None]:
        return self.emitter.subscribe(callback)

    # -- merge -----------------------------------------------------------

    @staticmethod
    def _unique(candidates: Iterable[NotificationEvent]) -> List[NotificationEvent]:
        batch: List[NotificationEvent] = []
        batch_ids: Set[str] = set()
        for candidate in candidates:
            event_id = getattr(candidate, "id", None)
            if not event_id:
                LOGGER.warning("Dropping notification candidate without id: %r", candidate)
                continue
            if event_id in batch_ids:
                continue
            batch_ids.add(event_id)
            batch.append(candidate)
        return batch

    def _prepend(self, delta: List[NotificationEvent]) -> None:
        try:
            self._log = self.store.prepend_log(delta)
        except StoreWriteError as exc:
            LOGGER.warning("Notification log not persisted: %s", exc)
            self._log = _prepend_capped(self._log, delta, self.store.cap)

    def merge(self, candidates: Iterable[NotificationEvent]) -> List[NotificationEvent]:
        """Record unseen candidates and alert them; returns the delta."""
        with self._lock:
            batch = self._unique(candidates)
            if not batch:
                return []

            self._known |= self.store.known_ids()
            survivors = [event for event in batch if event.id not in self._known]
            if not survivors:
                return []

            new_ids = [event.id for event in survivors]
            self._known.update(new_ids)
            try:
                self._known |= self.store.add_known_ids(new_ids)
            except StoreWriteError as exc:
                LOGGER.warning("Known ids not persisted, alerts may repeat next session: %s", exc)

            language = self._language()
            delta = [render(event, language) for event in survivors]
            self._prepend(delta)

            self._unread += len(delta)
            LOGGER.info("Merged %d new notification(s)", len(delta))

        try:
            self.emitter.emit(delta)
        except Exception:
            LOGGER.exception("Alert emission failed; %d event(s) stay recorded as seen", len(delta))
        return delta

    def record(self, candidates: Iterable[NotificationEvent]) -> List[NotificationEvent]:
        """Add unseen candidates to the shared log without alerting them.

        Used by headless workers. The known-id set is left untouched, so the
        next interactive merge of the same events still alerts them and
        counts them as unread.
        """
        with self._lock:
            batch = self._unique(candidates)
            if not batch:
                return []
            self._known |= self.store.known_ids()
            logged = {event.id for event in self.store.load_log()}
            fresh = [event for event in batch if event.id not in self._known and event.id not in logged]
            if not fresh:
                return []
            language = self._language()
            delta = [render(event, language) for event in fresh]
            self._prepend(delta)
            LOGGER.info("Recorded %d notification(s) for the next interactive merge", len(delta))
            return delta

    # -- acknowledgement -------------------------------------------------

    def mark_viewed(self) -> None:
        """The notification view was opened; clears the badge only."""
        with self._lock:
            self._unread = 0

    def acknowledge_all(self) -> None:
        with self._lock:
            self._unread = 0
            pending = [event.id for event in self._log if event.id not in self._known]
            if not pending:
                return
            self._known.update(pending)
            try:
                self._known |= self.store.add_known_ids(pending)
            except StoreWriteError as exc:
                LOGGER.warning("Acknowledgement not persisted: %s", exc)

    def dismiss(self, event_id: str) -> Optional[NotificationEvent]:
        """Drop one entry from the log and keep its id known for good."""
        with self._lock:
            return self._dismiss_locked(event_id)

    def dismiss_reminder(self, event_id: str) -> Optional[NotificationEvent]:
        with self._lock:
            entry = next((event for event in self._log if event.id == event_id), None)
            if entry is not None and entry.kind != EventKind.REVIEW_REMINDER:
                raise ValueError(f"{event_id} is not a review reminder")
            return self._dismiss_locked(event_id)

    def _dismiss_locked(self, event_id: str) -> Optional[NotificationEvent]:
        removed = next((event for event in self._log if event.id == event_id), None)
        self._known.add(event_id)
        try:
            self._known |= self.store.add_known_ids([event_id])
        except StoreWriteError as exc:
            LOGGER.warning("Dismissal of %s not persisted: %s", event_id, exc)
        try:
            self._log = self.store.remove_from_log(event_id)
        except StoreWriteError as exc:
            LOGGER.warning("Log removal of %s not persisted: %s", event_id, exc)
            self._log = [event for event in self._log if event.id != event_id]
        if removed is not None:
            self._unread = max(0, self._unread - 1)
        return removed

    # -- cross-context ---------------------------------------------------

    def reload(self) -> None:
        """Refresh the in-memory mirrors after another context wrote the store."""
        with self._lock:
            self._known |= self.store.known_ids()
            self._log = self.store.load_log()

    def reset(self) -> None:
        """Forget in-memory state (logout); persisted state is untouched."""
        with self._lock:
            self._unread = 0
            self._known = self.store.known_ids()
            self._log = self.store.load_log()
        self.emitter.reset()
