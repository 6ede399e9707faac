"""Passive text-to-speech narration of whatever the user points at or focuses.

Text is resolved from an explicit accessible label on the element or one of
its nearest ancestors, else from the element's own short visible text. A burst
of interaction signals is debounced so that only the last one is spoken, and
only one utterance plays at a time.
"""
from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import (
    NARRATION_DEBOUNCE_SECONDS,
    NARRATION_LABEL_ATTRIBUTE,
    NARRATION_MAX_ANCESTORS,
    NARRATION_MAX_CHILDREN,
    NARRATION_MAX_TEXT,
)
from .scheduler import Scheduler, TaskHandle
from .signals import Subscriptions, UiSignals

LOGGER = logging.getLogger(__name__)


@dataclass(eq=False)
class Element:
    """Minimal view of a UI element, as delivered by the host's signal bridge."""

    tag: str = "div"
    attributes: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    children: List["Element"] = field(default_factory=list)
    parent: Optional["Element"] = field(default=None, repr=False)

    def append(self, child: "Element") -> "Element":
        child.parent = self
        self.children.append(child)
        return child


class SpeechChannel:
    def speak(self, text: str) -> None:
        raise NotImplementedError

    def cancel(self) -> None:
        raise NotImplementedError


class SubprocessSpeech(SpeechChannel):
    """Speaks through a command-line synthesizer such as ``espeak``."""

    def __init__(self, command: str = "espeak") -> None:
        self.command = command
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None

    def speak(self, text: str) -> None:
        with self._lock:
            self._terminate()
            self._process = subprocess.Popen(
                [*shlex.split(self.command), text],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )

    def cancel(self) -> None:
        with self._lock:
            self._terminate()

    def _terminate(self) -> None:
        process, self._process = self._process, None
        if process is not None and process.poll() is None:
            process.terminate()


def _label(element: Element) -> Optional[str]:
    value = (element.attributes.get(NARRATION_LABEL_ATTRIBUTE) or "").strip()
    return value or None


def resolve_text(
    element: Optional[Element],
    *,
    max_ancestors: int = NARRATION_MAX_ANCESTORS,
    max_text: int = NARRATION_MAX_TEXT,
    max_children: int = NARRATION_MAX_CHILDREN,
) -> Optional[str]:
    """Pick the speakable text for ``element`` or ``None`` when nothing fits."""
    if element is None:
        return None
    label = _label(element)
    if label:
        return label

    ancestor = element.parent
    for _ in range(max_ancestors):
        if ancestor is None:
            break
        label = _label(ancestor)
        if label:
            return label
        ancestor = ancestor.parent

    text = " ".join((element.text or "").split())
    if text and len(text) <= max_text and len(element.children) <= max_children:
        return text
    return None


class NarrationEngine:
    def __init__(
        self,
        signals: UiSignals,
        speech: SpeechChannel,
        scheduler: Scheduler,
        *,
        debounce: float = NARRATION_DEBOUNCE_SECONDS,
    ) -> None:
        self.signals = signals
        self.speech = speech
        self.scheduler = scheduler
        self.debounce = debounce
        self._lock = threading.Lock()
        self._enabled = False
        self._pending: Optional[TaskHandle] = None
        self._sequence = 0
        self._subscriptions = Subscriptions()

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        with self._lock:
            if enabled == self._enabled:
                return
            self._enabled = enabled
            if enabled:
                self._subscriptions.connect(self.signals.interaction, self._on_interaction)
                LOGGER.info("Narration enabled")
                return
            self._sequence += 1
            self._clear_pending()
        self._subscriptions.disconnect_all()
        self._cancel_speech()
        LOGGER.info("Narration disabled")

    def close(self) -> None:
        self.set_enabled(False)
        with self._lock:
            self._clear_pending()

    def _clear_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _cancel_speech(self) -> None:
        try:
            self.speech.cancel()
        except Exception:
            LOGGER.exception("Could not cancel speech")

    def _on_interaction(self, sender, **kwargs) -> None:
        self.notify(sender)

    def notify(self, element: Optional[Element]) -> None:
        """Handle one interaction signal on ``element``."""
        text = resolve_text(element)
        with self._lock:
            if not self._enabled:
                return
            self._clear_pending()
            self._sequence += 1
            if text:
                self._pending = self.scheduler.call_later(self.debounce, self._speak, self._sequence, text)

    def _speak(self, sequence: int, text: str) -> None:
        with self._lock:
            if not self._enabled or sequence != self._sequence:
                return
            self._pending = None
        self._cancel_speech()
        try:
            self.speech.speak(text)
        except Exception:
            LOGGER.exception("Speech failed")
