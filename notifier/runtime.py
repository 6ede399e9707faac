"""Owner of every notifier component for one execution context.

Created at application start and torn down with ``shutdown()``; ``logout()``
stops polling and clears per-user state without discarding the shared
known-id set, so a later login never re-alerts events already seen.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Deque, List, Optional, Sequence

from .api import LibraryApiClient
from .channels import AlertEmitter, CommandSoundPlayer, SoundPlayer, Toast
from .config import ACCESSIBILITY_PREFS_KEY, NOTIFICATION_PREFS_KEY, Settings, load_settings
from .engine import MergeEngine
from .errors import FetchError, StoreWriteError
from .fetchers import REVIEW_PREFIX, SYSTEM_PREFIX, Fetcher, default_fetchers
from .models import NotificationEvent
from .narration import NarrationEngine, SpeechChannel, SubprocessSpeech
from .poller import Poller
from .preferences import Preferences
from .scheduler import Scheduler, ThreadScheduler
from .signals import UiSignals
from .store import EventStore, KeyValueStore, open_store
from .sync import CrossTabSynchronizer, StoreWatcher

LOGGER = logging.getLogger(__name__)

PENDING_TOAST_LIMIT = 50


class NotifierRuntime:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        backend: Optional[KeyValueStore] = None,
        api: Optional[LibraryApiClient] = None,
        fetchers: Optional[Sequence[Fetcher]] = None,
        scheduler: Optional[Scheduler] = None,
        signals: Optional[UiSignals] = None,
        speech: Optional[SpeechChannel] = None,
        sound_player: Optional[SoundPlayer] = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.backend = backend or open_store(self.settings)
        self.events = EventStore(self.backend)
        self.signals = signals or UiSignals()
        self.scheduler = scheduler or ThreadScheduler()
        self.preferences = Preferences(self.backend)
        self.api = api or LibraryApiClient(self.settings.api_base, timeout=self.settings.fetch_timeout)

        if sound_player is None and self.settings.sound_command:
            sound_player = CommandSoundPlayer(self.settings.sound_command)
        self.emitter = AlertEmitter(
            sound_player=sound_player,
            sound_enabled=lambda: self.preferences.notifications.sound,
        )
        self.engine = MergeEngine(self.events, self.emitter, language=lambda: self.preferences.language)
        self.poller = Poller(
            fetchers if fetchers is not None else default_fetchers(self.api),
            self.engine,
            self.scheduler,
            self.events.token,
            signals=self.signals,
            enabled=lambda: self.preferences.notifications.in_app,
        )
        self.watcher = StoreWatcher(self.backend, self.signals, self.scheduler, interval=self.settings.sync_seconds)
        self.sync = CrossTabSynchronizer(
            self.backend,
            self.signals,
            on_logout=self._logout_from_broadcast,
            preferences=self.preferences,
            engine=self.engine,
        )
        if speech is None:
            speech = SubprocessSpeech(self.settings.tts_command or "espeak")
        self.narration = NarrationEngine(self.signals, speech, self.scheduler)

        self._toasts: Deque[Toast] = deque(maxlen=PENDING_TOAST_LIMIT)
        self._toast_lock = threading.Lock()
        self._logout_handlers: List[Callable[[], None]] = []
        self.engine.on_alert(self._queue_toast)
        self.preferences.subscribe(self._on_preference_changed)

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        self.sync.attach()
        self.watcher.start()
        self.narration.set_enabled(self.preferences.accessibility.tts_enabled)
        if self.events.token() and self.preferences.notifications.in_app:
            self.poller.start(self.settings.poll_seconds)

    def login(self, token: str) -> None:
        self.events.set_token(token)
        self.poller.reset_authorization()
        if self.preferences.notifications.in_app:
            self.poller.start(self.settings.poll_seconds)

    def logout(self, *, broadcast: bool = True) -> None:
        self.poller.stop()
        self._logout_step("clear the token", lambda: self.events.set_token(None))
        self._logout_step("clear notification preferences", self.preferences.clear)
        self.engine.reset()
        with self._toast_lock:
            self._toasts.clear()
        if broadcast:
            self._logout_step("broadcast logout", self.sync.broadcast_logout)
        for handler in list(self._logout_handlers):
            try:
                handler()
            except Exception:
                LOGGER.exception("Logout handler failed")

    def _logout_step(self, action: str, step: Callable[[], None]) -> None:
        try:
            step()
        except StoreWriteError as exc:
            LOGGER.warning("Logout could not %s: %s", action, exc)

    def _logout_from_broadcast(self) -> None:
        self.logout(broadcast=False)

    def on_logout(self, handler: Callable[[], None]) -> None:
        self._logout_handlers.append(handler)

    def shutdown(self) -> None:
        self.poller.close()
        self.watcher.stop()
        self.sync.detach()
        self.narration.close()
        self.scheduler.shutdown()
        self.backend.close()

    # -- preferences -----------------------------------------------------

    def _on_preference_changed(self, key: str) -> None:
        if key == ACCESSIBILITY_PREFS_KEY:
            self.narration.set_enabled(self.preferences.accessibility.tts_enabled)
        elif key == NOTIFICATION_PREFS_KEY:
            if not self.preferences.notifications.in_app:
                self.poller.stop()
            elif self.events.token() and not self.poller.running:
                self.poller.start(self.settings.poll_seconds)

    # -- UI outputs ------------------------------------------------------

    def _queue_toast(self, toast: Toast) -> None:
        with self._toast_lock:
            self._toasts.append(toast)

    def drain_toasts(self) -> List[Toast]:
        with self._toast_lock:
            toasts = list(self._toasts)
            self._toasts.clear()
        return toasts

    def dismiss(self, event_id: str) -> Optional[NotificationEvent]:
        """Dismiss a reminder or a system notification from the log."""
        if event_id.startswith(REVIEW_PREFIX):
            return self.engine.dismiss_reminder(event_id)
        removed = self.engine.dismiss(event_id)
        token = self.events.token()
        if event_id.startswith(SYSTEM_PREFIX) and token:
            try:
                self.api.mark_notification_read(token, event_id[len(SYSTEM_PREFIX):])
            except FetchError as exc:
                LOGGER.warning("Could not mark %s read on the server: %s", event_id, exc)
        return removed
