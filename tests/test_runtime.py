from conftest import FakeResponse, FakeSoundPlayer, StubFetcher, reminder_event, status_event
from notifier.config import ACCESSIBILITY_PREFS_KEY, LOGOUT_KEY, NOTIFICATION_PREFS_KEY
from notifier.errors import StoreWriteError
from notifier.models import EventKind, EventStatus, NotificationEvent


def system_event(raw_id):
    return NotificationEvent(
        id=f"sys:{raw_id}",
        kind=EventKind.SYSTEM,
        status=EventStatus.INFO,
        derived_title="Feedback reply",
        derived_description="Thanks for writing in.",
    )


def test_login_polls_and_queues_toasts(runtime_factory, scheduler):
    fetcher = StubFetcher("requests", [status_event("r1")])
    runtime = runtime_factory(fetcher)
    runtime.start()
    assert fetcher.tokens == []

    runtime.login("tok")

    assert fetcher.tokens == ["tok"]
    toasts = runtime.drain_toasts()
    assert [t.event.id for t in toasts] == ["r1"]
    assert runtime.drain_toasts() == []
    assert runtime.engine.get_unread_count() == 1


def test_start_resumes_polling_for_stored_session(runtime_factory, event_store):
    event_store.set_token("persisted")
    fetcher = StubFetcher("requests", [])
    runtime = runtime_factory(fetcher)

    runtime.start()

    assert fetcher.tokens == ["persisted"]
    assert runtime.poller.running


def test_logout_keeps_known_ids(runtime_factory, scheduler, backend, event_store):
    fetcher = StubFetcher("requests", [status_event("r1")])
    runtime = runtime_factory(fetcher)
    runtime.start()
    runtime.login("tok")
    handled = []
    runtime.on_logout(lambda: handled.append(True))
    runtime.preferences.update_notifications({"sound": True})

    runtime.logout()

    assert not runtime.poller.running
    assert event_store.token() is None
    assert backend.get(LOGOUT_KEY) is not None
    assert backend.get(NOTIFICATION_PREFS_KEY) is None
    assert runtime.engine.get_unread_count() == 0
    assert handled == [True]
    assert "r1" in event_store.known_ids()

    runtime.login("tok-2")
    assert runtime.drain_toasts() == []


def test_logout_broadcast_from_other_context(runtime_factory, scheduler, backend, event_store):
    fetcher = StubFetcher("requests", [])
    runtime = runtime_factory(fetcher)
    runtime.start()
    runtime.login("tok")

    backend.write_external(LOGOUT_KEY, 1700000000000)
    scheduler.advance(1)

    assert not runtime.poller.running
    assert event_store.token() is None
    assert backend.get(LOGOUT_KEY) == 1700000000000


def test_in_app_preference_toggles_polling(runtime_factory, scheduler):
    fetcher = StubFetcher("requests", [])
    runtime = runtime_factory(fetcher)
    runtime.start()
    runtime.login("tok")

    runtime.preferences.update_notifications({"inApp": False})
    assert not runtime.poller.running
    scheduler.advance(60)
    assert len(fetcher.tokens) == 1

    runtime.preferences.update_notifications({"inApp": True})
    assert runtime.poller.running
    assert len(fetcher.tokens) == 2


def test_tts_preference_drives_narration(runtime_factory, backend, scheduler):
    runtime = runtime_factory()
    runtime.start()
    assert not runtime.narration.enabled

    runtime.preferences.update_accessibility({"ttsEnabled": True})
    assert runtime.narration.enabled

    backend.write_external(ACCESSIBILITY_PREFS_KEY, {"ttsEnabled": False})
    scheduler.advance(1)
    assert not runtime.narration.enabled


def test_sound_cue_needs_sound_preference(runtime_factory):
    player = FakeSoundPlayer()
    fetcher = StubFetcher("requests", [status_event("r1")], [status_event("r1"), status_event("r2")])
    runtime = runtime_factory(fetcher, sound_player=player)
    runtime.start()
    runtime.login("tok")
    assert player.cues == []

    runtime.preferences.update_notifications({"sound": True})
    runtime.poller.run_cycle()

    assert player.cues == ["success"]


def test_dismiss_system_notification_marks_read_on_server(runtime_factory, session):
    session.routes["/notifications/n1/read"] = FakeResponse(200, {})
    runtime = runtime_factory(StubFetcher("system", [system_event("n1")]))
    runtime.start()
    runtime.login("tok")

    removed = runtime.dismiss("sys:n1")

    assert removed.id == "sys:n1"
    assert runtime.engine.get_log() == []
    assert session.calls[-1]["method"] == "PUT"


def test_dismiss_survives_server_failure(runtime_factory, session, caplog):
    session.routes["/notifications/n1/read"] = FakeResponse(500, "oops")
    runtime = runtime_factory(StubFetcher("system", [system_event("n1")]))
    runtime.start()
    runtime.login("tok")

    assert runtime.dismiss("sys:n1") is not None
    assert "Could not mark sys:n1 read" in caplog.text


def test_dismiss_reminder_routes_to_reminder_path(runtime_factory, session):
    runtime = runtime_factory(StubFetcher("reminders", [reminder_event("b1")]))
    runtime.start()
    runtime.login("tok")

    assert runtime.dismiss("review:b1").id == "review:b1"
    assert runtime.engine.get_unread_count() == 0
    assert session.calls == []


def test_shutdown_cancels_everything(runtime_factory, scheduler):
    runtime = runtime_factory(StubFetcher("requests", []))
    runtime.start()
    runtime.login("tok")

    runtime.shutdown()

    assert scheduler.pending() == 0
    assert not runtime.poller.running


def test_narration_survives_logout(runtime_factory, backend):
    runtime = runtime_factory(StubFetcher("requests", []))
    runtime.start()
    runtime.preferences.update_accessibility({"ttsEnabled": True, "accessibilityMode": True})
    runtime.login("tok")

    runtime.logout()

    assert runtime.preferences.accessibility.tts_enabled is True
    assert backend.get(ACCESSIBILITY_PREFS_KEY)["ttsEnabled"] is True
    assert runtime.narration.enabled


def test_logout_finishes_when_store_deletes_fail(runtime_factory, backend, event_store, monkeypatch, caplog):
    runtime = runtime_factory(StubFetcher("requests", []))
    runtime.start()
    runtime.login("tok")
    handled = []
    runtime.on_logout(lambda: handled.append(True))

    def refuse(key):
        raise StoreWriteError(key, OSError("read-only file system"))

    monkeypatch.setattr(backend, "delete", refuse)

    runtime.logout()

    assert not runtime.poller.running
    assert backend.get(LOGOUT_KEY) is not None
    assert handled == [True]
    assert "Logout could not clear the token" in caplog.text
    assert "Logout could not clear notification preferences" in caplog.text
