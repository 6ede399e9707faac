import pytest

from conftest import reminder_event, status_event
from notifier.channels import AlertEmitter
from notifier.config import KNOWN_IDS_KEY, LOG_CAP, NOTIFICATIONS_KEY
from notifier.engine import MergeEngine
from notifier.errors import StoreWriteError
from notifier.store import EventStore, MemoryStore


class CountingStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.writes = 0

    def set(self, key, value):
        self.writes += 1
        super().set(key, value)


class FailingStore(MemoryStore):
    def update(self, key, updater, default=None):
        raise StoreWriteError(key, OSError("disk full"))


def test_same_candidate_twice_stores_and_alerts_once(engine, toasts, event_store):
    engine.merge([status_event("r1")])
    engine.merge([status_event("r1")])

    assert [e.id for e in event_store.load_log()] == ["r1"]
    assert len(toasts) == 1
    assert engine.get_unread_count() == 1


def test_repeated_poll_of_approved_request():
    engine = MergeEngine(EventStore(MemoryStore()))
    record = status_event("r1", status="approved", title="Dune")

    first = engine.merge([record])
    second = engine.merge([record])

    assert len(first) == 1 and second == []
    (event,) = engine.get_log()
    assert event.derived_title == "✅ Request Approved"
    assert '"Dune"' in event.derived_description
    assert engine.get_unread_count() == 1


def test_merge_order_does_not_change_final_state():
    a, b = status_event("a"), reminder_event("book-b")
    one = MergeEngine(EventStore(MemoryStore()))
    two = MergeEngine(EventStore(MemoryStore()))

    one.merge([a])
    one.merge([b])
    two.merge([b])
    two.merge([a])

    assert one.store.known_ids() == two.store.known_ids() == {"a", "review:book-b"}
    assert {e.id for e in one.get_log()} == {e.id for e in two.get_log()}


def test_full_log_evicts_oldest_entry(engine, event_store):
    for i in range(LOG_CAP):
        engine.merge([status_event(f"old-{i}")])
    assert len(event_store.load_log()) == LOG_CAP

    engine.merge([status_event("newest")])

    log = event_store.load_log()
    assert len(log) == LOG_CAP
    assert log[0].id == "newest"
    assert "old-0" not in {e.id for e in log}
    assert log[-1].id == "old-1"


def test_log_never_exceeds_cap_with_large_batch(engine):
    engine.merge([status_event(f"r{i}") for i in range(LOG_CAP + 12)])

    log = engine.get_log()
    assert len(log) == LOG_CAP
    assert log[0].id == "r0"


def test_no_survivors_means_no_writes_and_no_alerts(toasts):
    backend = CountingStore()
    emitter = AlertEmitter()
    emitter.subscribe(toasts.append)
    engine = MergeEngine(EventStore(backend), emitter)
    engine.merge([status_event("r1")])
    writes = backend.writes

    assert engine.merge([]) == []
    assert engine.merge([status_event("r1")]) == []
    assert backend.writes == writes
    assert len(toasts) == 1


def test_candidate_without_id_is_dropped(engine, caplog):
    broken = status_event("")
    delta = engine.merge([broken, status_event("ok")])

    assert [e.id for e in delta] == ["ok"]
    assert "without id" in caplog.text


def test_known_id_is_persisted_before_alert(backend, event_store):
    seen_at_alert = []
    emitter = AlertEmitter()
    emitter.subscribe(lambda toast: seen_at_alert.append(set(backend.get(KNOWN_IDS_KEY, []))))
    engine = MergeEngine(event_store, emitter)

    engine.merge([status_event("r9")])

    assert seen_at_alert == [{"r9"}]


def test_failed_alert_does_not_roll_back_merge(event_store):
    emitter = AlertEmitter()

    def explode(toast):
        raise RuntimeError("toast system unavailable")

    emitter.subscribe(explode)
    engine = MergeEngine(event_store, emitter)

    engine.merge([status_event("r1")])

    assert "r1" in event_store.known_ids()
    assert engine.merge([status_event("r1")]) == []


def test_store_write_failure_keeps_session_state():
    engine = MergeEngine(EventStore(FailingStore()))

    delta = engine.merge([status_event("r1")])

    assert [e.id for e in delta] == ["r1"]
    assert [e.id for e in engine.get_log()] == ["r1"]
    assert engine.is_known("r1")
    assert engine.merge([status_event("r1")]) == []


def test_dismissed_reminder_never_realerts(engine, toasts, event_store):
    engine.merge([reminder_event("bookA")])
    assert engine.get_unread_count() == 1

    removed = engine.dismiss_reminder("review:bookA")
    engine.merge([reminder_event("bookA")])

    assert removed is not None
    assert event_store.load_log() == []
    assert "review:bookA" in event_store.known_ids()
    assert len(toasts) == 1
    assert engine.get_unread_count() == 0


def test_dismiss_reminder_rejects_other_kinds(engine):
    engine.merge([status_event("r1")])

    with pytest.raises(ValueError):
        engine.dismiss_reminder("r1")


def test_dismiss_unseen_reminder_still_marks_it_known(engine, toasts):
    assert engine.dismiss_reminder("review:never-seen") is None

    assert engine.merge([reminder_event("never-seen")]) == []
    assert toasts == []


def test_acknowledge_all_resets_counter_and_is_idempotent(engine, backend):
    engine.merge([status_event("r1"), status_event("r2")])
    backend.write_external(NOTIFICATIONS_KEY, [status_event("x1").to_dict()] + backend.get(NOTIFICATIONS_KEY))
    engine.reload()

    engine.acknowledge_all()
    once = backend.get(KNOWN_IDS_KEY)
    engine.acknowledge_all()

    assert engine.get_unread_count() == 0
    assert sorted(once) == ["r1", "r2", "x1"]
    assert backend.get(KNOWN_IDS_KEY) == once


def test_mark_viewed_only_clears_badge(engine, event_store):
    engine.merge([status_event("r1")])
    engine.mark_viewed()

    assert engine.get_unread_count() == 0
    assert len(event_store.load_log()) == 1


def test_derived_text_is_frozen_at_merge_time(event_store):
    language = {"value": "zh"}
    engine = MergeEngine(event_store, language=lambda: language["value"])
    engine.merge([status_event("r1", status="rejected", reason="Damaged")])

    language["value"] = "en"
    engine.reload()

    (event,) = engine.get_log()
    assert event.derived_title == "❌ 申请被拒绝"
    assert "Damaged" in event.derived_description


def test_rejection_without_reason_uses_placeholder(engine):
    (event,) = engine.merge([status_event("r1", status="rejected", request_type="renew")])

    assert "renew" in event.derived_description
    assert "No explanation provided by admin" in event.derived_description


def test_other_context_known_ids_suppress_merge(engine, backend, toasts):
    backend.write_external(KNOWN_IDS_KEY, ["r5"])

    assert engine.merge([status_event("r5")]) == []
    assert toasts == []


def test_reload_picks_up_foreign_log(engine, backend):
    backend.write_external(NOTIFICATIONS_KEY, [status_event("x1").to_dict()])

    engine.reload()

    assert [e.id for e in engine.get_log()] == ["x1"]


def test_record_logs_without_alerting_or_marking_known(engine, toasts, event_store):
    recorded = engine.record([status_event("w1"), status_event("w1"), status_event("")])

    assert [e.id for e in recorded] == ["w1"]
    assert recorded[0].derived_title == "✅ Request Approved"
    assert engine.record([status_event("w1")]) == []
    assert event_store.known_ids() == set()
    assert toasts == []
    assert engine.get_unread_count() == 0

    assert [e.id for e in engine.merge([status_event("w1")])] == ["w1"]
    assert [e.id for e in event_store.load_log()] == ["w1"]
    assert len(toasts) == 1


def test_record_skips_known_ids(engine, event_store):
    engine.merge([status_event("seen")])

    assert engine.record([status_event("seen")]) == []
    assert len(event_store.load_log()) == 1
