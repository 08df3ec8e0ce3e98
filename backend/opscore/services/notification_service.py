# Overview: User-facing notifications (toasts) and system notification rows.

from __future__ import annotations

import logging

from flask import g, has_app_context

logger = logging.getLogger(__name__)

SUCCESS = "success"
INFO = "info"
WARNING = "warning"
ERROR = "error"

_LOG_LEVELS = {
    SUCCESS: logging.INFO,
    INFO: logging.INFO,
    WARNING: logging.WARNING,
    ERROR: logging.ERROR,
}

# Alert severity -> toast level
SEVERITY_LEVELS = {
    "critical": ERROR,
    "high": WARNING,
    "medium": INFO,
    "low": INFO,
}


def _buffer() -> list[dict] | None:
    if not has_app_context():
        return None
    return g.setdefault("_opscore_notifications", [])


def notify(level: str, message: str, **context) -> dict:
    """
    Emit a user-facing message.

    Messages are logged and collected on the current app context so the route
    layer can return them with the response.
    """
    if level not in _LOG_LEVELS:
        raise ValueError(f"Unknown notification level: {level}")
    entry = {"level": level, "message": message}
    if context:
        entry["context"] = context
    logger.log(_LOG_LEVELS[level], "[%s] %s", level, message)
    buffer = _buffer()
    if buffer is not None:
        buffer.append(entry)
    return entry


def success(message: str, **context) -> dict:
    return notify(SUCCESS, message, **context)


def info(message: str, **context) -> dict:
    return notify(INFO, message, **context)


def warning(message: str, **context) -> dict:
    return notify(WARNING, message, **context)


def error(message: str, **context) -> dict:
    return notify(ERROR, message, **context)


def collected() -> list[dict]:
    buffer = _buffer()
    return list(buffer) if buffer else []


def drain() -> list[dict]:
    """Return and clear the messages collected so far."""
    buffer = _buffer()
    if not buffer:
        return []
    items = list(buffer)
    buffer.clear()
    return items


def create_system_notification(
    *,
    type: str,
    title: str,
    message: str,
    severity: str = "info",
    metadata: dict | None = None,
    target_roles: list[str] | None = None,
    target_user_id: int | None = None,
) -> dict:
    """Persist an in-app notification row through the storage gateway."""
    from .storage_gateway import get_gateway

    rows = get_gateway().insert(
        "system_notifications",
        {
            "type": type,
            "title": title,
            "message": message,
            "severity": severity,
            "details": metadata,
            "target_roles": list(target_roles or []),
            "target_user_id": target_user_id,
        },
    )
    return rows[0]


def send_email_notification(*, subject: str, body: str, recipients_role: str = "admin") -> bool:
    """
    Email delivery is not wired to a provider yet; the message is logged so
    operators can see what would have been sent.
    """
    logger.info("Email notification not sent (no provider configured): to role=%s subject=%r", recipients_role, subject)
    logger.debug("Email body: %s", body)
    return False
