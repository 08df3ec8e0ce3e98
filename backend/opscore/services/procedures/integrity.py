# Overview: Integrity alert upserts and the resolution/acknowledgement mutations.

from __future__ import annotations

from ...extensions import db
from ...models import DataIntegrityAlert, DataIntegrityIssue
from ..concurrency import lock_for_update
from ..storage_errors import InvalidTransitionError, RecordNotFoundError
from .registry import procedure
from opscore.time_utils import utcnow


@procedure("upsert_integrity_alert")
def upsert_integrity_alert(
    *,
    issue_type: str,
    fingerprint: str,
    count: int,
    severity: str,
    message: str,
    channels: list[str],
) -> dict:
    """
    Insert an alert unless an unacknowledged one already covers the same
    issue set, in which case that alert is refreshed and ``created`` is False.
    """
    existing = (
        lock_for_update(
            db.session.query(DataIntegrityAlert).filter_by(
                issue_type=issue_type,
                fingerprint=fingerprint,
                acknowledged=False,
            )
        )
        .order_by(DataIntegrityAlert.id.desc())
        .first()
    )
    now = utcnow()
    if existing is not None:
        existing.count = count
        existing.message = message
        existing.last_triggered_at = now
        existing.occurrences = (existing.occurrences or 1) + 1
        db.session.flush()
        return {"alert": existing.to_dict(), "created": False}

    alert = DataIntegrityAlert(
        issue_type=issue_type,
        fingerprint=fingerprint,
        count=count,
        severity=severity,
        message=message,
        channels=list(channels),
        triggered_at=now,
        last_triggered_at=now,
        occurrences=1,
    )
    db.session.add(alert)
    db.session.flush()
    return {"alert": alert.to_dict(), "created": True}


@procedure("resolve_integrity_issue")
def resolve_integrity_issue(*, issue_id: int, resolution: str, actor_id: int | None) -> dict:
    issue = lock_for_update(db.session.query(DataIntegrityIssue).filter_by(id=issue_id)).first()
    if issue is None:
        raise RecordNotFoundError(f"Integrity issue {issue_id} not found")
    if issue.resolved_at is not None:
        raise InvalidTransitionError(f"Integrity issue {issue_id} is already resolved")
    issue.resolution = resolution
    issue.resolved_by_user_id = actor_id
    issue.resolved_at = utcnow()
    db.session.flush()
    return issue.to_dict()


@procedure("acknowledge_integrity_alert")
def acknowledge_integrity_alert(*, alert_id: int, actor_id: int | None) -> dict:
    alert = lock_for_update(db.session.query(DataIntegrityAlert).filter_by(id=alert_id)).first()
    if alert is None:
        raise RecordNotFoundError(f"Integrity alert {alert_id} not found")
    if alert.acknowledged:
        raise InvalidTransitionError(f"Integrity alert {alert_id} is already acknowledged")
    alert.acknowledged = True
    alert.acknowledged_by_user_id = actor_id
    alert.acknowledged_at = utcnow()
    db.session.flush()
    return alert.to_dict()
