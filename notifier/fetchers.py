from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .api import LibraryApiClient
from .errors import MalformedEventError
from .models import EventKind, EventStatus, NotificationEvent, utc_now_iso

LOGGER = logging.getLogger(__name__)

REVIEW_PREFIX = "review:"
SYSTEM_PREFIX = "sys:"
ADMIN_PREFIX = "admin:"


def _first(record: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = record.get(name)
        if value not in (None, ""):
            return value
    return None


def _record_id(record: Dict[str, Any]) -> str:
    value = _first(record, "id", "_id")
    if value is None:
        raise MalformedEventError("record has no id")
    return str(value)


def _timestamps(record: Dict[str, Any]) -> tuple[str, str]:
    captured = utc_now_iso()
    created = _first(record, "createdAt", "created_at") or captured
    updated = _first(record, "updatedAt", "updated_at") or created
    return str(created), str(updated)


def _status(value: Any) -> EventStatus:
    try:
        return EventStatus(str(value).lower())
    except ValueError as exc:
        raise MalformedEventError(f"unknown status {value!r}") from exc


class Fetcher:
    """Reads one remote source and maps its records to candidate events."""

    source = "base"

    def __init__(self, client: LibraryApiClient) -> None:
        self.client = client

    def load(self, token: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def to_event(self, record: Dict[str, Any]) -> Optional[NotificationEvent]:
        """Map a record; ``None`` means the record is not notification-worthy."""
        raise NotImplementedError

    def fetch(self, token: str) -> List[NotificationEvent]:
        events: List[NotificationEvent] = []
        for record in self.load(token):
            if not isinstance(record, dict):
                LOGGER.warning("Dropping %s record of type %s", self.source, type(record).__name__)
                continue
            try:
                event = self.to_event(record)
            except MalformedEventError as exc:
                LOGGER.warning("Dropping malformed %s record: %s", self.source, exc)
                continue
            if event is not None:
                events.append(event)
        return events


class StatusChangeFetcher(Fetcher):
    """Approved or rejected renew/return requests of the current reader."""

    source = "requests"

    def load(self, token: str) -> List[Dict[str, Any]]:
        return self.client.list_status_changed_requests(token)

    def to_event(self, record: Dict[str, Any]) -> Optional[NotificationEvent]:
        status = _status(_first(record, "status") or "")
        if status not in (EventStatus.APPROVED, EventStatus.REJECTED):
            return None
        created, updated = _timestamps(record)
        return NotificationEvent(
            id=_record_id(record),
            kind=EventKind.STATUS_CHANGE,
            status=status,
            subject_title=str(_first(record, "subjectTitle", "bookTitle") or ""),
            subject_id=_first(record, "subjectId", "bookId"),
            request_type=_first(record, "type", "requestType", "kind"),
            reason=_first(record, "reason"),
            created_at=created,
            updated_at=updated,
        )


class ReviewReminderFetcher(Fetcher):
    """Returned books the reader has not reviewed yet."""

    source = "reminders"

    def load(self, token: str) -> List[Dict[str, Any]]:
        return self.client.list_review_reminders(token)

    def to_event(self, record: Dict[str, Any]) -> Optional[NotificationEvent]:
        book_id = _first(record, "subjectId", "bookId")
        if book_id is None:
            book_id = _record_id(record)
        created, updated = _timestamps(record)
        return NotificationEvent(
            id=f"{REVIEW_PREFIX}{book_id}",
            kind=EventKind.REVIEW_REMINDER,
            status=EventStatus.INFO,
            subject_title=str(_first(record, "subjectTitle", "bookTitle") or ""),
            subject_id=str(book_id),
            created_at=created,
            updated_at=updated,
        )


class SystemNotificationFetcher(Fetcher):
    """Unread server-side notifications such as feedback replies."""

    source = "system"

    def load(self, token: str) -> List[Dict[str, Any]]:
        return self.client.list_system_notifications(token)

    def to_event(self, record: Dict[str, Any]) -> Optional[NotificationEvent]:
        if record.get("read") or record.get("isRead"):
            return None
        raw_id = _record_id(record)
        title = _first(record, "title")
        if title is None:
            raise MalformedEventError(f"system notification {raw_id} has no title")
        created, updated = _timestamps(record)
        return NotificationEvent(
            id=f"{SYSTEM_PREFIX}{raw_id}",
            kind=EventKind.SYSTEM,
            status=EventStatus.INFO,
            subject_id=_first(record, "relatedId"),
            created_at=created,
            updated_at=updated,
            derived_title=str(title),
            derived_description=str(_first(record, "message") or ""),
        )


class PendingRequestFetcher(Fetcher):
    """Requests waiting for an administrator; readers get 403 here."""

    source = "admin"

    def load(self, token: str) -> List[Dict[str, Any]]:
        return self.client.list_all_requests(token)

    def to_event(self, record: Dict[str, Any]) -> Optional[NotificationEvent]:
        if str(record.get("status", "")).lower() != EventStatus.PENDING.value:
            return None
        created, updated = _timestamps(record)
        return NotificationEvent(
            id=f"{ADMIN_PREFIX}{_record_id(record)}",
            kind=EventKind.PENDING_REQUEST,
            status=EventStatus.PENDING,
            subject_title=str(_first(record, "subjectTitle", "bookTitle") or ""),
            subject_id=_first(record, "subjectId", "bookId"),
            request_type=_first(record, "type", "requestType", "kind"),
            created_at=created,
            updated_at=updated,
        )


def default_fetchers(client: LibraryApiClient, *, include_admin: bool = True) -> List[Fetcher]:
    fetchers: List[Fetcher] = [
        StatusChangeFetcher(client),
        ReviewReminderFetcher(client),
        SystemNotificationFetcher(client),
    ]
    if include_admin:
        fetchers.append(PendingRequestFetcher(client))
    return fetchers


__all__ = [
    "Fetcher",
    "StatusChangeFetcher",
    "ReviewReminderFetcher",
    "SystemNotificationFetcher",
    "PendingRequestFetcher",
    "default_fetchers",
]
