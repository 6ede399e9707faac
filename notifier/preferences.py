from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .config import (
    ACCESSIBILITY_PREFS_KEY,
    DEFAULT_ACCESSIBILITY_PREFS,
    DEFAULT_LANGUAGE,
    DEFAULT_NOTIFICATION_PREFS,
    LANGUAGE_KEY,
    NOTIFICATION_PREFS_KEY,
    REMINDER_DAYS_RANGE,
)
from .messages import resolve_language
from .models import AccessibilityPreferences, NotificationPreferences
from .store import KeyValueStore

LOGGER = logging.getLogger(__name__)

PreferenceListener = Callable[[str], None]


def _validated_patch(patch: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(patch) - set(defaults)
    if unknown:
        raise ValueError(f"unknown preference(s): {', '.join(sorted(unknown))}")
    clean: Dict[str, Any] = {}
    for key, value in patch.items():
        if isinstance(defaults[key], bool):
            if not isinstance(value, bool):
                raise ValueError(f"{key} must be true or false")
            clean[key] = value
        elif isinstance(defaults[key], int):
            if isinstance(value, bool):
                raise ValueError(f"{key} must be an integer")
            try:
                number = int(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{key} must be an integer") from exc
            low, high = REMINDER_DAYS_RANGE
            if not low <= number <= high:
                raise ValueError(f"{key} must be between {low} and {high}")
            clean[key] = number
    return clean


class Preferences:
    """Process-wide preferences; every write is read-modify-write on the store."""

    def __init__(self, backend: KeyValueStore) -> None:
        self.backend = backend
        self._lock = threading.Lock()
        self._listeners: List[PreferenceListener] = []
        self._accessibility = self._read_accessibility()
        self._notifications = self._read_notifications()
        self._language = self._read_language()

    def _read_accessibility(self) -> AccessibilityPreferences:
        raw = self.backend.get(ACCESSIBILITY_PREFS_KEY, {})
        return AccessibilityPreferences.from_dict({**DEFAULT_ACCESSIBILITY_PREFS, **(raw if isinstance(raw, dict) else {})})

    def _read_notifications(self) -> NotificationPreferences:
        raw = self.backend.get(NOTIFICATION_PREFS_KEY, {})
        return NotificationPreferences.from_dict({**DEFAULT_NOTIFICATION_PREFS, **(raw if isinstance(raw, dict) else {})})

    def _read_language(self) -> str:
        raw = self.backend.get(LANGUAGE_KEY, DEFAULT_LANGUAGE)
        return resolve_language(raw if isinstance(raw, str) else None)

    @property
    def accessibility(self) -> AccessibilityPreferences:
        with self._lock:
            return AccessibilityPreferences.from_dict(self._accessibility.to_dict())

    @property
    def notifications(self) -> NotificationPreferences:
        with self._lock:
            return NotificationPreferences.from_dict(self._notifications.to_dict())

    @property
    def language(self) -> str:
        with self._lock:
            return self._language

    def subscribe(self, listener: PreferenceListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception:
                LOGGER.exception("Preference listener failed for %s", key)

    def update_accessibility(self, patch: Dict[str, Any]) -> AccessibilityPreferences:
        clean = _validated_patch(patch, DEFAULT_ACCESSIBILITY_PREFS)
        stored = self.backend.update(
            ACCESSIBILITY_PREFS_KEY,
            lambda current: {**DEFAULT_ACCESSIBILITY_PREFS, **(current if isinstance(current, dict) else {}), **clean},
            {},
        )
        with self._lock:
            self._accessibility = AccessibilityPreferences.from_dict(stored)
        self._notify(ACCESSIBILITY_PREFS_KEY)
        return self.accessibility

    def update_notifications(self, patch: Dict[str, Any]) -> NotificationPreferences:
        clean = _validated_patch(patch, DEFAULT_NOTIFICATION_PREFS)
        stored = self.backend.update(
            NOTIFICATION_PREFS_KEY,
            lambda current: {**DEFAULT_NOTIFICATION_PREFS, **(current if isinstance(current, dict) else {}), **clean},
            {},
        )
        with self._lock:
            self._notifications = NotificationPreferences.from_dict(stored)
        self._notify(NOTIFICATION_PREFS_KEY)
        return self.notifications

    def set_language(self, language: str) -> str:
        resolved = resolve_language(language)
        self.backend.set(LANGUAGE_KEY, resolved)
        with self._lock:
            self._language = resolved
        self._notify(LANGUAGE_KEY)
        return resolved

    def reload(self, key: Optional[str] = None) -> None:
        """Re-read one preference key (or all) written by another context."""
        keys = [key] if key else [ACCESSIBILITY_PREFS_KEY, NOTIFICATION_PREFS_KEY, LANGUAGE_KEY]
        for name in keys:
            with self._lock:
                if name == ACCESSIBILITY_PREFS_KEY:
                    self._accessibility = self._read_accessibility()
                elif name == NOTIFICATION_PREFS_KEY:
                    self._notifications = self._read_notifications()
                elif name == LANGUAGE_KEY:
                    self._language = self._read_language()
                else:
                    continue
            self._notify(name)

    def clear(self) -> None:
        """Drop per-user notification preferences; accessibility settings stay with the device."""
        self.backend.delete(NOTIFICATION_PREFS_KEY)
        self.reload(NOTIFICATION_PREFS_KEY)
