"""Shared configuration defaults for the notifier."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

LOG_CAP = 30

KNOWN_IDS_KEY = "notification_known_ids"
NOTIFICATIONS_KEY = "notifications"
ACCESSIBILITY_PREFS_KEY = "accessibility_prefs"
NOTIFICATION_PREFS_KEY = "notification_prefs"
LANGUAGE_KEY = "app_language"
TOKEN_KEY = "auth_token"
LOGOUT_KEY = "logout_event"

PREFERENCE_KEYS = {ACCESSIBILITY_PREFS_KEY, NOTIFICATION_PREFS_KEY, LANGUAGE_KEY}

DEFAULT_ACCESSIBILITY_PREFS = {
    "accessibilityMode": False,
    "ttsEnabled": False,
}

DEFAULT_NOTIFICATION_PREFS = {
    "inApp": True,
    "email": False,
    "sound": False,
    "reminderDays": 3,
}

DEFAULT_LANGUAGE = "en"
SUPPORTED_LANGUAGES = {"en", "zh"}
REMINDER_DAYS_RANGE = (1, 30)

# Narration bounds
NARRATION_DEBOUNCE_SECONDS = 0.3
NARRATION_MAX_ANCESTORS = 3
NARRATION_MAX_TEXT = 80
NARRATION_MAX_CHILDREN = 3
NARRATION_LABEL_ATTRIBUTE = "aria-label"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring invalid %s=%r", name, raw)
        return default


@dataclass(slots=True)
class Settings:
    """Runtime settings resolved from the environment."""

    api_base: str = "http://localhost:5000/api"
    poll_seconds: float = 15.0
    fetch_timeout: float = 10.0
    store_backend: str = "json"  # json, sql, memory
    data_dir: str = "."
    database_url: Optional[str] = None
    sync_seconds: float = 1.0
    tts_command: Optional[str] = "espeak"
    sound_command: Optional[str] = None
    log_level: str = "INFO"


def load_settings() -> Settings:
    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    data_dir = os.getenv("NOTIFIER_DATA_DIR") or os.path.join(base_dir, "data")
    backend = (os.getenv("NOTIFIER_STORE_BACKEND") or "json").strip().lower()
    return Settings(
        api_base=os.getenv("NOTIFIER_API_BASE", "http://localhost:5000/api").rstrip("/"),
        poll_seconds=_env_float("NOTIFIER_POLL_SECONDS", 15.0),
        fetch_timeout=_env_float("NOTIFIER_FETCH_TIMEOUT", 10.0),
        store_backend=backend,
        data_dir=data_dir,
        database_url=os.getenv("NOTIFIER_DATABASE_URL") or f"sqlite:///{os.path.join(data_dir, 'notifier.db')}",
        sync_seconds=_env_float("NOTIFIER_SYNC_SECONDS", 1.0),
        tts_command=os.getenv("NOTIFIER_TTS_COMMAND", "espeak") or None,
        sound_command=os.getenv("NOTIFIER_SOUND_COMMAND") or None,
        log_level=os.getenv("NOTIFIER_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or os.getenv("NOTIFIER_LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
