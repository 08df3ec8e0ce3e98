from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from opscore.services.storage_errors import ProcedureError
from opscore.time_utils import to_utc_z, utcnow


class User(db.Model):
    """
    Application user with exactly one role.

    Authentication lives upstream; this table is the source of truth for roles,
    designations and special permission grants ("resource:action" strings).
    """
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_role_active", "role", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False, unique=True)
    email = db.Column(db.String(255), nullable=True, unique=True)
    name = db.Column(db.String(255), nullable=True)

    # admin, production, sales_manager, finance, viewer
    role = db.Column(db.String(32), nullable=False, default="viewer")
    designation = db.Column(db.String(128), nullable=True)
    custom_permissions = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r} role={self.role!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "designation": self.designation,
            "custom_permissions": list(self.custom_permissions or []),
            "is_active": self.is_active,
            "updated_by_user_id": self.updated_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class AuditLogEntry(db.Model):
    """
    Before/after snapshot of a privileged mutation.

    IMMUTABLE: Never update or delete. Append-only; the ORM rejects flushes that
    would modify or remove an existing row.
    """
    __tablename__ = "audit_log_entries"
    __table_args__ = (
        db.Index("ix_audit_log_entries_user_action", "user_id", "action"),
        db.Index("ix_audit_log_entries_timestamp", "timestamp"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Subject of the change
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    # role_change, permission_change, profile_update, designation_change
    action = db.Column(db.String(32), nullable=False)
    old_values = db.Column(db.JSON, nullable=True)
    new_values = db.Column(db.JSON, nullable=True)
    performed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    details = db.Column("metadata", db.JSON, nullable=True)

    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "performed_by": self.performed_by,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": self.details,
            "timestamp": to_utc_z(self.timestamp),
        }


class ImmutableRecordError(ProcedureError):
    """Raised when an append-only row is modified or deleted through the ORM."""


@event.listens_for(AuditLogEntry, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ImmutableRecordError(f"audit log entry {target.id} is immutable")


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ImmutableRecordError(f"audit log entry {target.id} cannot be deleted")


class LoginAttempt(db.Model):
    """
    Failed-login counter keyed by identity + origin.

    Rows carry their own expiry; an expired row counts as zero and is purged by
    the maintenance command. Nothing here is correctness-critical.
    """
    __tablename__ = "login_attempts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(320), nullable=False, unique=True)
    identity = db.Column(db.String(255), nullable=False, index=True)
    origin = db.Column(db.String(64), nullable=True)

    failure_count = db.Column(db.Integer, nullable=False, default=0)
    first_failed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_failed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    locked_until = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "origin": self.origin,
            "failure_count": self.failure_count,
            "first_failed_at": to_utc_z(self.first_failed_at),
            "last_failed_at": to_utc_z(self.last_failed_at),
            "locked_until": to_utc_z(self.locked_until),
            "expires_at": to_utc_z(self.expires_at),
        }
