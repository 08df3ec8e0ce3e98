# Overview: TTL-backed failed-login counters.

from __future__ import annotations

from datetime import timedelta

from ...extensions import db
from ...models import LoginAttempt
from ..concurrency import lock_for_update
from .registry import procedure
from opscore.time_utils import utcnow


@procedure("record_login_failure")
def record_login_failure(
    *,
    key: str,
    identity: str,
    origin: str | None,
    max_attempts: int,
    window_minutes: int,
    lockout_minutes: int,
) -> dict:
    """
    Count one failure. The counter restarts once its row has expired; reaching
    max_attempts inside the window locks the key for lockout_minutes.
    """
    now = utcnow()
    row = lock_for_update(db.session.query(LoginAttempt).filter_by(key=key)).first()
    if row is None:
        row = LoginAttempt(key=key, identity=identity, origin=origin, failure_count=0, first_failed_at=now)
        db.session.add(row)
    elif row.expires_at <= now:
        row.failure_count = 0
        row.first_failed_at = now
        row.locked_until = None

    row.failure_count += 1
    row.last_failed_at = now
    if row.failure_count >= max_attempts:
        row.locked_until = now + timedelta(minutes=lockout_minutes)

    window_end = row.first_failed_at + timedelta(minutes=window_minutes)
    row.expires_at = max(window_end, row.locked_until) if row.locked_until else window_end
    db.session.flush()
    return row.to_dict()


@procedure("clear_login_attempts")
def clear_login_attempts(*, key: str) -> int:
    return db.session.query(LoginAttempt).filter_by(key=key).delete(synchronize_session=False)


@procedure("purge_expired_login_attempts")
def purge_expired_login_attempts(*, now=None) -> int:
    cutoff = now or utcnow()
    return (
        db.session.query(LoginAttempt)
        .filter(LoginAttempt.expires_at <= cutoff)
        .delete(synchronize_session=False)
    )
