"""Thin client for the library service's read endpoints used by the fetchers."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from .errors import FetchError, NotAuthorizedError

LOGGER = logging.getLogger(__name__)

AUTH_FAILURE_CODES = {401, 403}


class LibraryApiClient:
    """Bearer-token reads against the library API with a bounded timeout."""

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault("Content-Type", "application/json")

    def _request(self, method: str, path: str, token: str, *, source: str) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            raise FetchError(source, f"timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise FetchError(source, str(exc)) from exc

        if resp.status_code in AUTH_FAILURE_CODES:
            raise NotAuthorizedError(source, resp.status_code)
        if resp.status_code >= 400:
            raise FetchError(source, f"HTTP {resp.status_code}: {resp.text[:120]}")
        if method == "GET":
            try:
                return resp.json()
            except ValueError as exc:
                raise FetchError(source, "response is not JSON") from exc
        return None

    def _get_list(self, path: str, token: str, *, source: str) -> List[Dict[str, Any]]:
        payload = self._request("GET", path, token, source=source)
        if not isinstance(payload, list):
            raise FetchError(source, f"expected a JSON list, got {type(payload).__name__}")
        return payload

    def list_status_changed_requests(self, token: str) -> List[Dict[str, Any]]:
        return self._get_list("/library/request/user", token, source="requests")

    def list_review_reminders(self, token: str) -> List[Dict[str, Any]]:
        return self._get_list("/library/review/reminders", token, source="reminders")

    def list_system_notifications(self, token: str) -> List[Dict[str, Any]]:
        return self._get_list("/notifications", token, source="system")

    def list_all_requests(self, token: str) -> List[Dict[str, Any]]:
        return self._get_list("/library/requests", token, source="admin")

    def mark_notification_read(self, token: str, notification_id: str) -> None:
        self._request("PUT", f"/notifications/{notification_id}/read", token, source="system")
