"""
Login Throttling Service

WHY: Slow down brute-force attempts against the upstream identity layer by
counting failed logins per identity + origin and locking the pair for a while
once too many failures pile up.

- Counters live in the login_attempts table, not in process memory, so every
  worker and restart sees the same state.
- Each row expires (TTL); expired rows count as zero and are purged by
  `flask maintenance purge-login-attempts`.
- A successful login clears the counter.
- Limits come from LOGIN_MAX_FAILED_ATTEMPTS, LOGIN_LOCKOUT_WINDOW_MINUTES and
  LOGIN_LOCKOUT_DURATION_MINUTES.
"""

from __future__ import annotations

import logging

from flask import current_app

from .storage_gateway import get_gateway
from opscore.time_utils import parse_iso_datetime, utcnow
from opscore.validation import ValidationError

logger = logging.getLogger(__name__)


def _limits() -> tuple[int, int, int]:
    config = current_app.config
    return (
        int(config.get("LOGIN_MAX_FAILED_ATTEMPTS", 10)),
        int(config.get("LOGIN_LOCKOUT_WINDOW_MINUTES", 15)),
        int(config.get("LOGIN_LOCKOUT_DURATION_MINUTES", 15)),
    )


def _normalize(identity: str) -> str:
    if not identity or not str(identity).strip():
        raise ValidationError("identity is required")
    return str(identity).strip().lower()


def attempt_key(identity: str, origin: str | None = None) -> str:
    return f"{_normalize(identity)}|{origin or '-'}"


def _current_row(identity: str, origin: str | None) -> dict | None:
    rows = get_gateway().query("login_attempts", {"key": attempt_key(identity, origin)})
    if not rows:
        return None
    row = rows[0]
    if parse_iso_datetime(row["expires_at"]) <= utcnow():
        return None
    return row


def record_failed_attempt(identity: str, origin: str | None = None) -> dict:
    """
    Record a failed login.

    Returns the lockout status after counting this failure.
    """
    max_attempts, window, duration = _limits()
    row = get_gateway().rpc(
        "record_login_failure",
        {
            "key": attempt_key(identity, origin),
            "identity": _normalize(identity),
            "origin": origin,
            "max_attempts": max_attempts,
            "window_minutes": window,
            "lockout_minutes": duration,
        },
    )
    if row["locked_until"]:
        logger.warning(
            "Login locked: identity=%s origin=%s failures=%d until=%s",
            row["identity"], origin, row["failure_count"], row["locked_until"],
        )
    return _status(row)


def is_locked(identity: str, origin: str | None = None) -> tuple[bool, int | None]:
    """
    (True, seconds_remaining) while locked, otherwise (False, None).
    """
    row = _current_row(identity, origin)
    if row is None or not row["locked_until"]:
        return False, None
    locked_until = parse_iso_datetime(row["locked_until"])
    now = utcnow()
    if now >= locked_until:
        return False, None
    return True, int((locked_until - now).total_seconds())


def clear_attempts(identity: str, origin: str | None = None) -> None:
    """Forget failures after a successful login."""
    get_gateway().rpc("clear_login_attempts", {"key": attempt_key(identity, origin)})


def _status(row: dict | None) -> dict:
    max_attempts, window, duration = _limits()
    failures = 0
    seconds = None
    if row is not None:
        failures = row["failure_count"]
        if row["locked_until"]:
            remaining = (parse_iso_datetime(row["locked_until"]) - utcnow()).total_seconds()
            seconds = int(remaining) if remaining > 0 else None
    return {
        "locked": seconds is not None,
        "failed_attempts": failures,
        "max_attempts": max_attempts,
        "seconds_until_unlock": seconds,
        "lockout_window_minutes": window,
        "lockout_duration_minutes": duration,
    }


def get_lockout_status(identity: str, origin: str | None = None) -> dict:
    return _status(_current_row(identity, origin))


def purge_expired_attempts() -> int:
    """Delete expired counters. Returns the number of rows removed."""
    deleted = get_gateway().rpc("purge_expired_login_attempts")
    logger.info("Purged %d expired login attempt counter(s)", deleted)
    return deleted
