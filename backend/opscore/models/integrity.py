from __future__ import annotations

from sqlalchemy import event, inspect

from ..extensions import db
from opscore.services.storage_errors import ProcedureError
from opscore.time_utils import to_utc_z, utcnow


class DataIntegrityIssue(db.Model):
    """
    One finding of one integrity check.

    Append-mostly: created by the auditor, afterwards only the resolution
    fields may change. Never auto-deleted.
    """
    __tablename__ = "data_integrity_issues"
    __table_args__ = (
        db.Index("ix_data_integrity_issues_type_detected", "issue_type", "detected_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    issue_key = db.Column(db.String(128), nullable=False, index=True)   # e.g. "orphaned-order-12"
    issue_type = db.Column(db.String(64), nullable=False)
    description = db.Column(db.Text, nullable=False)
    severity = db.Column(db.String(16), nullable=False)   # low, medium, high, critical
    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    detected_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    resolution = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "issue_key": self.issue_key,
            "issue_type": self.issue_type,
            "description": self.description,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "detected_at": to_utc_z(self.detected_at),
            "resolved": self.resolved_at is not None,
            "resolved_at": to_utc_z(self.resolved_at),
            "resolved_by_user_id": self.resolved_by_user_id,
            "resolution": self.resolution,
        }


class DataIntegrityAlert(db.Model):
    """
    Threshold alert over issues of one type.

    fingerprint hashes the sorted entity references the alert covers; an
    unacknowledged alert with the same (issue_type, fingerprint) is refreshed
    rather than duplicated.
    """
    __tablename__ = "data_integrity_alerts"
    __table_args__ = (
        db.Index("ix_data_integrity_alerts_type_fingerprint", "issue_type", "fingerprint"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    issue_type = db.Column(db.String(64), nullable=False)
    fingerprint = db.Column(db.String(64), nullable=False)
    count = db.Column(db.Integer, nullable=False)
    severity = db.Column(db.String(16), nullable=False)
    message = db.Column(db.Text, nullable=False)
    channels = db.Column(db.JSON, nullable=False, default=list)

    triggered_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_triggered_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    occurrences = db.Column(db.Integer, nullable=False, default=1)

    acknowledged = db.Column(db.Boolean, nullable=False, default=False)
    acknowledged_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "issue_type": self.issue_type,
            "fingerprint": self.fingerprint,
            "count": self.count,
            "severity": self.severity,
            "message": self.message,
            "channels": list(self.channels or []),
            "triggered_at": to_utc_z(self.triggered_at),
            "last_triggered_at": to_utc_z(self.last_triggered_at),
            "occurrences": self.occurrences,
            "acknowledged": self.acknowledged,
            "acknowledged_by_user_id": self.acknowledged_by_user_id,
            "acknowledged_at": to_utc_z(self.acknowledged_at),
        }


class SystemNotification(db.Model):
    """In-app notification row targeted at roles and/or a single user."""
    __tablename__ = "system_notifications"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(64), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    severity = db.Column(db.String(16), nullable=False, default="info")
    details = db.Column("metadata", db.JSON, nullable=True)
    target_roles = db.Column(db.JSON, nullable=False, default=list)
    target_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "metadata": self.details,
            "target_roles": list(self.target_roles or []),
            "target_user_id": self.target_user_id,
            "is_read": self.is_read,
            "created_at": to_utc_z(self.created_at),
        }


class AppendOnlyViolation(ProcedureError):
    """Raised when a flush touches fields outside a model's mutable set."""


_MUTABLE_FIELDS = {
    DataIntegrityIssue: {"resolved_at", "resolved_by_user_id", "resolution"},
    DataIntegrityAlert: {
        "acknowledged", "acknowledged_by_user_id", "acknowledged_at",
        "count", "message", "last_triggered_at", "occurrences",
    },
}


def _guard_append_mostly(mapper, connection, target):
    allowed = _MUTABLE_FIELDS[type(target)]
    state = inspect(target)
    changed = {attr.key for attr in state.attrs if attr.history.has_changes()}
    forbidden = changed - allowed
    if forbidden:
        raise AppendOnlyViolation(
            f"{type(target).__name__} {target.id}: fields {sorted(forbidden)} are read-only"
        )


def _reject_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"{type(target).__name__} {target.id} cannot be deleted")


for _model in _MUTABLE_FIELDS:
    event.listen(_model, "before_update", _guard_append_mostly)
    event.listen(_model, "before_delete", _reject_delete)
