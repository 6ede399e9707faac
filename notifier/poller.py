from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Set

from .engine import MergeEngine
from .errors import FetchError, NotAuthorizedError
from .fetchers import Fetcher
from .models import NotificationEvent
from .scheduler import Scheduler, TaskHandle
from .signals import Subscriptions, UiSignals

LOGGER = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]


class Poller:
    """Runs fetch+merge cycles on an interval and when the context regains focus.

    ``stop()`` bumps a generation counter; a cycle whose fetches complete after
    that point discards its results instead of merging them.
    """

    def __init__(
        self,
        fetchers: Sequence[Fetcher],
        engine: MergeEngine,
        scheduler: Scheduler,
        token_provider: TokenProvider,
        *,
        signals: Optional[UiSignals] = None,
        enabled: Optional[Callable[[], bool]] = None,
        max_workers: int = 4,
    ) -> None:
        self.fetchers = list(fetchers)
        self.engine = engine
        self.scheduler = scheduler
        self.token_provider = token_provider
        self.signals = signals
        self.enabled = enabled or (lambda: True)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notifier-fetch")
        self._lock = threading.RLock()
        self._generation = 0
        self._running = False
        self._handle: Optional[TaskHandle] = None
        self._subscriptions = Subscriptions()
        self._unauthorized: Set[str] = set()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def disabled_sources(self) -> Set[str]:
        with self._lock:
            return set(self._unauthorized)

    def start(self, interval: float) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._generation += 1
        if self.signals is not None:
            self._subscriptions.connect(self.signals.focus_regained, self._on_focus)
            self._subscriptions.connect(self.signals.visibility_changed, self._on_visibility)
        LOGGER.info("Polling every %ss with %d source(s)", interval, len(self.fetchers))
        self.run_cycle()
        handle = self.scheduler.call_repeating(interval, self.run_cycle)
        with self._lock:
            if self._running:
                self._handle = handle
                return
        handle.cancel()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            self._generation += 1
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()
        self._subscriptions.disconnect_all()

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=False)

    def reset_authorization(self) -> None:
        """Re-enable sources that were refused; call after a new login."""
        with self._lock:
            self._unauthorized.clear()

    def _on_focus(self, sender, **kwargs) -> None:
        self.run_cycle()

    def _on_visibility(self, sender, visible: bool = False, **kwargs) -> None:
        if visible:
            self.run_cycle()

    def _active_fetchers(self) -> List[Fetcher]:
        with self._lock:
            return [f for f in self.fetchers if f.source not in self._unauthorized]

    def _fetch_one(self, fetcher: Fetcher, token: str) -> List[NotificationEvent]:
        try:
            return fetcher.fetch(token)
        except NotAuthorizedError as exc:
            with self._lock:
                self._unauthorized.add(fetcher.source)
            LOGGER.info("Stopped polling %s until next login: %s", fetcher.source, exc)
        except FetchError as exc:
            LOGGER.warning("Fetch failed, skipping %s this cycle: %s", fetcher.source, exc)
        except Exception:
            LOGGER.exception("Unexpected failure in %s fetcher", fetcher.source)
        return []

    def run_cycle(self) -> List[NotificationEvent]:
        """Fetch every active source and merge the candidates; returns the delta."""
        with self._lock:
            generation = self._generation
            if not self._running:
                return []
        return self._run(generation)

    def run_once(self, token: Optional[str] = None, *, alert: bool = True) -> List[NotificationEvent]:
        """A single cycle outside of ``start``/``stop``.

        Headless workers pass ``alert=False``: candidates are only recorded in
        the log and stay unknown, leaving the alert to an interactive context.
        """
        return self._run(None, token, alert)

    def _run(self, generation: Optional[int], token: Optional[str] = None, alert: bool = True) -> List[NotificationEvent]:
        if not self.enabled():
            LOGGER.debug("In-app notifications disabled; skipping cycle")
            return []
        token = token or self.token_provider()
        if not token:
            return []

        fetchers = self._active_fetchers()
        if not fetchers:
            return []
        futures = [self._executor.submit(self._fetch_one, fetcher, token) for fetcher in fetchers]
        candidates: List[NotificationEvent] = []
        for future in futures:
            candidates.extend(future.result())

        with self._lock:
            if generation is not None and (not self._running or generation != self._generation):
                LOGGER.debug("Discarding %d candidate(s) from a cancelled cycle", len(candidates))
                return []
            if not alert:
                return self.engine.record(candidates)
            return self.engine.merge(candidates)

    def sources(self) -> Dict[str, bool]:
        with self._lock:
            return {f.source: f.source not in self._unauthorized for f in self.fetchers}
