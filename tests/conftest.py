from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import pytest

from notifier.api import LibraryApiClient
from notifier.channels import AlertEmitter, SoundPlayer
from notifier.config import Settings
from notifier.engine import MergeEngine
from notifier.fetchers import Fetcher
from notifier.models import EventKind, EventStatus, NotificationEvent
from notifier.narration import SpeechChannel
from notifier.runtime import NotifierRuntime
from notifier.scheduler import Scheduler, TaskHandle, run_guarded
from notifier.store import EventStore, MemoryStore


class _Task:
    def __init__(self, due: float, seq: int, fn: Callable[..., Any], args: tuple, interval: Optional[float]) -> None:
        self.due = due
        self.seq = seq
        self.fn = fn
        self.args = args
        self.interval = interval
        self.handle = TaskHandle()


class FakeScheduler(Scheduler):
    """Manual clock; tasks only run inside ``advance``."""

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = 0
        self._tasks: List[_Task] = []

    def _add(self, delay: float, fn, args, interval=None) -> TaskHandle:
        self._seq += 1
        task = _Task(self.now + delay, self._seq, fn, args, interval)
        self._tasks.append(task)
        return task.handle

    def call_later(self, delay, fn, *args):
        return self._add(delay, fn, args)

    def call_repeating(self, interval, fn, *args):
        return self._add(interval, fn, args, interval)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self._tasks if not t.handle.cancelled and t.due <= target]
            if not due:
                break
            task = min(due, key=lambda t: (t.due, t.seq))
            self.now = task.due
            if task.interval:
                task.due += task.interval
            else:
                self._tasks.remove(task)
            run_guarded(task.fn, *task.args)
        self.now = target
        self._tasks = [t for t in self._tasks if not t.handle.cancelled]

    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.handle.cancelled)

    def shutdown(self) -> None:
        for task in self._tasks:
            task.handle.cancel()
        self._tasks = []


class FakeSpeech(SpeechChannel):
    def __init__(self) -> None:
        self.spoken: List[str] = []
        self.cancels = 0

    def speak(self, text: str) -> None:
        self.spoken.append(text)

    def cancel(self) -> None:
        self.cancels += 1


class FakeSoundPlayer(SoundPlayer):
    def __init__(self) -> None:
        self.cues: List[str] = []

    def play(self, cue: str) -> None:
        self.cues.append(cue)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.status_code = status_code
        self.payload = payload

    @property
    def text(self) -> str:
        return str(self.payload)

    def json(self) -> Any:
        if isinstance(self.payload, str):
            raise ValueError("not json")
        return self.payload


class FakeSession:
    """Stands in for ``requests.Session``; routes match on the URL suffix."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None) -> None:
        self.routes = dict(routes or {})
        self.headers: Dict[str, str] = {}
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "headers": headers, "timeout": timeout})
        for suffix, outcome in self.routes.items():
            if url.endswith(suffix):
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        return FakeResponse(404, "no route")


class StubFetcher(Fetcher):
    """Returns queued results; an exception in the queue is raised instead."""

    def __init__(self, source: str, *results: Any) -> None:
        super().__init__(client=None)
        self.source = source
        self.results = list(results)
        self.tokens: List[str] = []

    def fetch(self, token: str) -> List[NotificationEvent]:
        self.tokens.append(token)
        result = self.results.pop(0) if len(self.results) > 1 else (self.results[0] if self.results else [])
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result()
        return list(result)


def status_event(event_id: str, status: str = "approved", title: str = "Dune", request_type: str = "return", reason=None) -> NotificationEvent:
    return NotificationEvent(
        id=event_id,
        kind=EventKind.STATUS_CHANGE,
        status=EventStatus(status),
        subject_title=title,
        request_type=request_type,
        reason=reason,
    )


def reminder_event(book_id: str, title: str = "Emma") -> NotificationEvent:
    return NotificationEvent(
        id=f"review:{book_id}",
        kind=EventKind.REVIEW_REMINDER,
        status=EventStatus.INFO,
        subject_title=title,
        subject_id=book_id,
    )


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def backend():
    return MemoryStore()


@pytest.fixture
def event_store(backend):
    return EventStore(backend)


@pytest.fixture
def toasts():
    return []


@pytest.fixture
def engine(event_store, toasts):
    emitter = AlertEmitter()
    emitter.subscribe(toasts.append)
    return MergeEngine(event_store, emitter)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def runtime_factory(backend, scheduler, session):
    created = []

    def build(*fetchers, sound_player=None):
        runtime = NotifierRuntime(
            Settings(store_backend="memory", poll_seconds=15, sync_seconds=1),
            backend=backend,
            api=LibraryApiClient("http://library.test/api", session=session),
            fetchers=list(fetchers),
            scheduler=scheduler,
            speech=FakeSpeech(),
            sound_player=sound_player,
        )
        created.append(runtime)
        return runtime

    yield build
    for runtime in created:
        runtime.poller.close()
