"""Human-readable titles and descriptions, rendered once when an event merges."""
from __future__ import annotations

from typing import Dict, Tuple

from .config import DEFAULT_LANGUAGE, SUPPORTED_LANGUAGES
from .models import EventKind, EventStatus, NotificationEvent

TEMPLATES: Dict[str, Dict[str, str]] = {
    "en": {
        "approved.title": "✅ Request Approved",
        "approved.body": 'Your {request} request ("{title}") has been approved.',
        "rejected.title": "❌ Request Rejected",
        "rejected.body": 'Your {request} request ("{title}") was rejected. Reason: {reason}',
        "no_reason": "No explanation provided by admin",
        "renew": "renew",
        "return": "return",
        "reminder.title": '📝 Please write a review for "{title}"',
        "reminder.body": "You have returned this book. Share your thoughts (max 500 chars).",
        "pending.title": "📬 New {request} request",
        "pending.body": '"{title}" is waiting for approval.',
        "system.title": "🔔 Notification",
        "unknown_book": "Unknown Book",
    },
    "zh": {
        "approved.title": "✅ 申请已通过",
        "approved.body": "您的{request}申请（《{title}》）已通过。",
        "rejected.title": "❌ 申请被拒绝",
        "rejected.body": "您的{request}申请（《{title}》）被拒绝。原因：{reason}",
        "no_reason": "管理员未提供说明",
        "renew": "续借",
        "return": "归还",
        "reminder.title": "📝 请为《{title}》写书评",
        "reminder.body": "您已归还此书，欢迎分享您的感想（最多 500 字）。",
        "pending.title": "📬 新的{request}申请",
        "pending.body": "《{title}》等待审批。",
        "system.title": "🔔 通知",
        "unknown_book": "未知图书",
    },
}


def resolve_language(language: str | None) -> str:
    lang = (language or DEFAULT_LANGUAGE).strip().lower()
    if lang not in SUPPORTED_LANGUAGES:
        lang = lang.split("-")[0]
    return lang if lang in SUPPORTED_LANGUAGES else DEFAULT_LANGUAGE


def describe(event: NotificationEvent, language: str | None = None) -> Tuple[str, str]:
    """Return ``(title, description)`` for ``event`` in ``language``."""
    t = TEMPLATES[resolve_language(language)]
    title = event.subject_title or t["unknown_book"]
    request = t["renew"] if event.request_type == "renew" else t["return"]

    if event.kind == EventKind.STATUS_CHANGE:
        if event.status == EventStatus.APPROVED:
            return t["approved.title"], t["approved.body"].format(request=request, title=title)
        if event.status == EventStatus.REJECTED:
            reason = event.reason or t["no_reason"]
            return t["rejected.title"], t["rejected.body"].format(request=request, title=title, reason=reason)
        return t["pending.title"].format(request=request), t["pending.body"].format(title=title)
    if event.kind == EventKind.REVIEW_REMINDER:
        return t["reminder.title"].format(title=title), t["reminder.body"]
    if event.kind == EventKind.PENDING_REQUEST:
        return t["pending.title"].format(request=request), t["pending.body"].format(title=title)
    # system notifications arrive with server-authored text
    return (event.derived_title or t["system.title"], event.derived_description)


def render(event: NotificationEvent, language: str | None = None) -> NotificationEvent:
    title, description = describe(event, language)
    return event.with_text(title, description)
