"""Ambient UI signals, injected into the components that react to them.

A host (browser bridge, desktop shell, test) owns one ``UiSignals`` instance
and sends on it; the notifier only ever subscribes.

- ``focus_regained``: the context came back to the foreground.
- ``visibility_changed``: kwargs ``visible: bool``.
- ``store_changed``: kwargs ``key``, ``old``, ``new`` for writes made by
  another execution context.
- ``interaction``: sender is the element; kwargs ``kind`` (``pointer-enter`` or
  ``focus``).
"""
from __future__ import annotations

from typing import Any, Callable, List

from blinker import Signal


class UiSignals:
    def __init__(self) -> None:
        self.focus_regained = Signal("focus-regained")
        self.visibility_changed = Signal("visibility-changed")
        self.store_changed = Signal("store-changed")
        self.interaction = Signal("interaction")


class Subscriptions:
    """Strongly-held receivers that can be detached together."""

    def __init__(self) -> None:
        self._connected: List[tuple[Signal, Callable[..., Any]]] = []

    def connect(self, signal: Signal, receiver: Callable[..., Any]) -> None:
        signal.connect(receiver, weak=False)
        self._connected.append((signal, receiver))

    def disconnect_all(self) -> None:
        connected, self._connected = self._connected, []
        for signal, receiver in connected:
            signal.disconnect(receiver)

    def __bool__(self) -> bool:
        return bool(self._connected)
