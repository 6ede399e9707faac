from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set

from .models import EventKind, EventStatus, NotificationEvent

LOGGER = logging.getLogger(__name__)

TOAST_DURATION_SECONDS = 8


@dataclass(frozen=True, slots=True)
class Toast:
    """A transient alert for one newly merged event."""

    event: NotificationEvent
    level: str  # success, error, info, warning
    duration: int = TOAST_DURATION_SECONDS

    @property
    def title(self) -> str:
        return self.event.derived_title

    @property
    def description(self) -> str:
        return self.event.derived_description

    def to_dict(self) -> dict:
        return {
            "id": self.event.id,
            "title": self.title,
            "description": self.description,
            "level": self.level,
            "duration": self.duration,
            "kind": self.event.kind.value,
            "status": self.event.status.value,
        }


def toast_level(event: NotificationEvent) -> str:
    if event.status == EventStatus.APPROVED:
        return "success"
    if event.status == EventStatus.REJECTED:
        return "error"
    if event.kind == EventKind.PENDING_REQUEST or event.status == EventStatus.PENDING:
        return "warning"
    return "info"


AlertListener = Callable[[Toast], None]


class SoundPlayer:
    def play(self, cue: str) -> None:
        raise NotImplementedError


class CommandSoundPlayer(SoundPlayer):
    """Plays a cue by running a shell-style command, e.g. ``paplay /sounds/{cue}.oga``."""

    def __init__(self, command: str) -> None:
        self.command = command

    def play(self, cue: str) -> None:
        args = shlex.split(self.command.format(cue=cue))
        subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)


class AlertEmitter:
    """Fan-out of toasts (and an optional audio cue), at most once per event id."""

    def __init__(
        self,
        sound_player: Optional[SoundPlayer] = None,
        sound_enabled: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.sound_player = sound_player
        self.sound_enabled = sound_enabled or (lambda: False)
        self._listeners: List[AlertListener] = []
        self._alerted: Set[str] = set()
        self._lock = threading.Lock()

    def subscribe(self, listener: AlertListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, events: Iterable[NotificationEvent]) -> int:
        """Alert each event in order; returns how many toasts were issued."""
        issued = 0
        for event in events:
            with self._lock:
                if event.id in self._alerted:
                    LOGGER.debug("Suppressing repeat alert for %s", event.id)
                    continue
                self._alerted.add(event.id)
                listeners = list(self._listeners)

            toast = Toast(event=event, level=toast_level(event))
            for listener in listeners:
                try:
                    listener(toast)
                except Exception:
                    LOGGER.exception("Alert listener failed for %s", event.id)
            issued += 1
            self._play_cue(toast)
        return issued

    def _play_cue(self, toast: Toast) -> None:
        if self.sound_player is None:
            return
        try:
            if not self.sound_enabled():
                return
            self.sound_player.play(toast.level)
        except Exception:
            LOGGER.exception("Audio cue failed for %s", toast.event.id)

    def reset(self) -> None:
        with self._lock:
            self._alerted.clear()
