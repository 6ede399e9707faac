from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .errors import MalformedEventError


class EventKind(str, Enum):
    STATUS_CHANGE = "status-change"
    REVIEW_REMINDER = "review-reminder"
    SYSTEM = "system"
    PENDING_REQUEST = "pending-request"


class EventStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    INFO = "info"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True, slots=True)
class NotificationEvent:
    """A materialized notification, immutable once stored."""

    id: str
    kind: EventKind
    status: EventStatus
    subject_title: str = ""
    subject_id: Optional[str] = None
    request_type: Optional[str] = None  # renew, return
    reason: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    derived_title: str = ""
    derived_description: str = ""

    def with_text(self, title: str, description: str) -> "NotificationEvent":
        return replace(self, derived_title=title, derived_description=description)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "subjectTitle": self.subject_title,
            "subjectId": self.subject_id,
            "requestType": self.request_type,
            "reason": self.reason,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "title": self.derived_title,
            "description": self.derived_description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationEvent":
        if not isinstance(data, dict):
            raise MalformedEventError(f"expected a mapping, got {type(data).__name__}")
        event_id = data.get("id")
        if not event_id:
            raise MalformedEventError("notification entry has no id")
        try:
            kind = EventKind(data.get("kind", EventKind.SYSTEM.value))
            status = EventStatus(data.get("status", EventStatus.INFO.value))
        except ValueError as exc:
            raise MalformedEventError(f"entry {event_id!r}: {exc}") from exc
        created = data.get("createdAt") or utc_now_iso()
        return cls(
            id=str(event_id),
            kind=kind,
            status=status,
            subject_title=data.get("subjectTitle") or "",
            subject_id=data.get("subjectId"),
            request_type=data.get("requestType"),
            reason=data.get("reason"),
            created_at=created,
            updated_at=data.get("updatedAt") or created,
            derived_title=data.get("title") or "",
            derived_description=data.get("description") or "",
        )


@dataclass(slots=True)
class AccessibilityPreferences:
    tts_enabled: bool = False
    accessibility_mode: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AccessibilityPreferences":
        data = data if isinstance(data, dict) else {}
        return cls(
            tts_enabled=bool(data.get("ttsEnabled", False)),
            accessibility_mode=bool(data.get("accessibilityMode", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"ttsEnabled": self.tts_enabled, "accessibilityMode": self.accessibility_mode}


@dataclass(slots=True)
class NotificationPreferences:
    """User-configurable notification preferences."""

    in_app: bool = True
    email: bool = False
    sound: bool = False
    reminder_days: int = 3

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NotificationPreferences":
        data = data if isinstance(data, dict) else {}
        try:
            reminder_days = int(data.get("reminderDays", 3))
        except (TypeError, ValueError):
            reminder_days = 3
        return cls(
            in_app=bool(data.get("inApp", True)),
            email=bool(data.get("email", False)),
            sound=bool(data.get("sound", False)),
            reminder_days=reminder_days,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inApp": self.in_app,
            "email": self.email,
            "sound": self.sound,
            "reminderDays": self.reminder_days,
        }
