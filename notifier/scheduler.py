"""Timer abstraction: one-shot and repeating tasks behind a cancellable handle."""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

LOGGER = logging.getLogger(__name__)


class TaskHandle:
    """Handle returned by a scheduler; ``cancel()`` is safe to call repeatedly."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()


class Scheduler:
    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> TaskHandle:
        raise NotImplementedError

    def call_repeating(self, interval: float, fn: Callable[..., Any], *args: Any) -> TaskHandle:
        raise NotImplementedError

    def shutdown(self) -> None:
        pass


def run_guarded(fn: Callable[..., Any], *args: Any) -> None:
    try:
        fn(*args)
    except Exception:
        LOGGER.exception("Scheduled task %s failed", getattr(fn, "__qualname__", fn))


class _ThreadTaskHandle(TaskHandle):
    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    def arm(self, delay: float, target: Callable[[], None]) -> None:
        with self._lock:
            if self.cancelled:
                return
            timer = threading.Timer(delay, target)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def cancel(self) -> None:
        super().cancel()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class ThreadScheduler(Scheduler):
    """Runs callbacks on daemon ``threading.Timer`` threads."""

    def __init__(self) -> None:
        self._handles: "set[_ThreadTaskHandle]" = set()
        self._lock = threading.Lock()

    def _track(self, handle: _ThreadTaskHandle) -> _ThreadTaskHandle:
        with self._lock:
            self._handles = {h for h in self._handles if not h.cancelled}
            self._handles.add(handle)
        return handle

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> TaskHandle:
        handle = self._track(_ThreadTaskHandle())

        def fire() -> None:
            if handle.cancelled:
                return
            handle.cancel()
            run_guarded(fn, *args)

        handle.arm(delay, fire)
        return handle

    def call_repeating(self, interval: float, fn: Callable[..., Any], *args: Any) -> TaskHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = self._track(_ThreadTaskHandle())

        def tick() -> None:
            if handle.cancelled:
                return
            run_guarded(fn, *args)
            handle.arm(interval, tick)

        handle.arm(interval, tick)
        return handle

    def shutdown(self) -> None:
        with self._lock:
            handles, self._handles = self._handles, set()
        for handle in handles:
            handle.cancel()
