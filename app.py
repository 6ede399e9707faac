# app.py
from flask import Flask, abort, jsonify, request
import logging
import os
from typing import Any, Dict, Optional

from notifier.config import configure_logging, load_settings
from notifier.errors import StoreWriteError
from notifier.runtime import NotifierRuntime

app = Flask(__name__)
app.secret_key = os.getenv("SECRET_KEY", "dev-only-key")
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("FLASK_ENV") == "production",
)

DEBUG = os.getenv("FLASK_ENV") != "production"
LOGGER = logging.getLogger(__name__)

RUNTIME: Optional[NotifierRuntime] = None


def get_runtime() -> NotifierRuntime:
    global RUNTIME
    if RUNTIME is None:
        configure_logging()
        RUNTIME = NotifierRuntime(load_settings())
        RUNTIME.start()
    return RUNTIME


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        abort(400, description="Expected a JSON object")
    return payload


@app.errorhandler(400)
def bad_request(err):
    return jsonify({"error": getattr(err, "description", "Bad request")}), 400


@app.errorhandler(404)
def not_found(err):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(StoreWriteError)
def store_unavailable(err):
    LOGGER.warning("Request failed on a store write: %s", err)
    return jsonify({"error": "Storage is unavailable, try again"}), 503


@app.get("/healthz")
def healthz():
    return jsonify({"status": "ok"})


# ------------------------------- Session ----------------------------------

@app.post("/api/session")
def login():
    token = str(json_body().get("token") or "").strip()
    if not token:
        abort(400, description="token is required")
    get_runtime().login(token)
    return jsonify({"ok": True})


@app.post("/api/logout")
def logout():
    get_runtime().logout(broadcast=True)
    return jsonify({"ok": True})


# ---------------------------- Notifications -------------------------------

@app.get("/api/notifications")
def list_notifications():
    runtime = get_runtime()
    return jsonify({
        "items": [event.to_dict() for event in runtime.engine.get_log()],
        "unread": runtime.engine.get_unread_count(),
    })


@app.get("/api/notifications/unread")
def unread_count():
    return jsonify({"count": get_runtime().engine.get_unread_count()})


@app.post("/api/notifications/viewed")
def notifications_viewed():
    runtime = get_runtime()
    runtime.engine.mark_viewed()
    return jsonify({"count": runtime.engine.get_unread_count()})


@app.post("/api/notifications/ack")
def acknowledge_all():
    runtime = get_runtime()
    runtime.engine.acknowledge_all()
    return jsonify({"count": runtime.engine.get_unread_count()})


@app.post("/api/notifications/<path:event_id>/dismiss")
def dismiss_notification(event_id):
    runtime = get_runtime()
    try:
        removed = runtime.dismiss(event_id)
    except ValueError as exc:
        abort(400, description=str(exc))
    return jsonify({"removed": removed is not None, "count": runtime.engine.get_unread_count()})


@app.get("/api/alerts")
def pending_alerts():
    return jsonify({"items": [toast.to_dict() for toast in get_runtime().drain_toasts()]})


# ----------------------------- Preferences --------------------------------

@app.get("/api/preferences/accessibility")
def get_accessibility():
    return jsonify(get_runtime().preferences.accessibility.to_dict())


@app.put("/api/preferences/accessibility")
def put_accessibility():
    try:
        prefs = get_runtime().preferences.update_accessibility(json_body())
    except ValueError as exc:
        abort(400, description=str(exc))
    return jsonify(prefs.to_dict())


@app.get("/api/preferences/notifications")
def get_notification_prefs():
    return jsonify(get_runtime().preferences.notifications.to_dict())


@app.put("/api/preferences/notifications")
def put_notification_prefs():
    try:
        prefs = get_runtime().preferences.update_notifications(json_body())
    except ValueError as exc:
        abort(400, description=str(exc))
    return jsonify(prefs.to_dict())


if __name__ == "__main__":
    app.run(debug=DEBUG)
