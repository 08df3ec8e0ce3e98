# Overview: Role, permission and profile changes written together with their audit entries.

from __future__ import annotations

from sqlalchemy import func

from ...extensions import db
from ...models import AuditLogEntry, User
from ..concurrency import lock_for_update
from ..storage_errors import LastAdminError, ProcedureError, RecordNotFoundError
from .registry import procedure

"""
User change invariants (authoritative)

- Every privileged mutation writes its AuditLogEntry in the same transaction.
- At least one active admin exists after any committed role change; the check
  runs after all changes of the transaction are flushed.
"""

ADMIN_ROLE = "admin"
PROFILE_FIELDS = ("name", "email", "designation")


def _lock_user(user_id: int) -> User:
    user = lock_for_update(db.session.query(User).filter_by(id=user_id)).first()
    if user is None:
        raise RecordNotFoundError(f"User {user_id} not found")
    return user


def _audit(*, user_id: int, action: str, old_values, new_values, actor_id: int, metadata=None,
           ip_address=None, user_agent=None) -> AuditLogEntry:
    entry = AuditLogEntry(
        user_id=user_id,
        action=action,
        old_values=old_values,
        new_values=new_values,
        performed_by=actor_id,
        details=metadata,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(entry)
    return entry


def _ensure_admin_remains() -> None:
    admins = (
        db.session.query(func.count(User.id))
        .filter(User.role == ADMIN_ROLE, User.is_active.is_(True))
        .scalar()
    )
    if not admins:
        raise LastAdminError("Cannot demote the last admin user. At least one admin must remain.")


def _apply_role_change(change: dict, actor_id: int, ip_address, user_agent) -> tuple[User, AuditLogEntry]:
    user = _lock_user(change["user_id"])
    new_role = change["new_role"]
    old_role = user.role
    if old_role == new_role:
        raise ProcedureError(f"User {user.id} already has role {new_role}")
    user.role = new_role
    user.updated_by_user_id = actor_id
    metadata = {"reason": change["reason"]} if change.get("reason") else None
    entry = _audit(
        user_id=user.id,
        action="role_change",
        old_values={"role": old_role},
        new_values={"role": new_role},
        actor_id=actor_id,
        metadata=metadata,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return user, entry


@procedure("change_user_role")
def change_user_role(*, user_id: int, new_role: str, actor_id: int, reason: str | None = None,
                     ip_address: str | None = None, user_agent: str | None = None) -> dict:
    user, entry = _apply_role_change(
        {"user_id": user_id, "new_role": new_role, "reason": reason}, actor_id, ip_address, user_agent,
    )
    db.session.flush()
    _ensure_admin_remains()
    return {"user": user.to_dict(), "audit_log": entry.to_dict()}


@procedure("bulk_change_user_roles")
def bulk_change_user_roles(*, changes: list[dict], actor_id: int,
                           ip_address: str | None = None, user_agent: str | None = None) -> list[dict]:
    applied = [_apply_role_change(change, actor_id, ip_address, user_agent) for change in changes]
    db.session.flush()
    _ensure_admin_remains()
    return [{"user": user.to_dict(), "audit_log": entry.to_dict()} for user, entry in applied]


@procedure("update_user_permissions")
def update_user_permissions(*, user_id: int, permissions: list[str], actor_id: int, operation: str,
                            ip_address: str | None = None, user_agent: str | None = None) -> dict:
    user = _lock_user(user_id)
    old = sorted(user.custom_permissions or [])
    new = sorted(set(permissions))
    if old == new:
        return {"user": user.to_dict(), "audit_log": None}
    user.custom_permissions = new
    user.updated_by_user_id = actor_id
    entry = _audit(
        user_id=user.id,
        action="permission_change",
        old_values={"permissions": old},
        new_values={"permissions": new},
        actor_id=actor_id,
        metadata={"operation": operation},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.flush()
    return {"user": user.to_dict(), "audit_log": entry.to_dict()}


@procedure("update_user_profile")
def update_user_profile(*, user_id: int, changes: dict, actor_id: int,
                        ip_address: str | None = None, user_agent: str | None = None) -> dict:
    """
    Apply profile edits. A designation change is audited on its own entry;
    the remaining fields share one profile_update entry.
    """
    user = _lock_user(user_id)
    entries = []

    unknown = set(changes) - set(PROFILE_FIELDS)
    if unknown:
        raise ProcedureError(f"Fields not editable: {sorted(unknown)}")

    if "designation" in changes and changes["designation"] != user.designation:
        entries.append(_audit(
            user_id=user.id,
            action="designation_change",
            old_values={"designation": user.designation},
            new_values={"designation": changes["designation"]},
            actor_id=actor_id,
            ip_address=ip_address,
            user_agent=user_agent,
        ))
        user.designation = changes["designation"]

    old_values, new_values = {}, {}
    for field in ("name", "email"):
        if field in changes and changes[field] != getattr(user, field):
            old_values[field] = getattr(user, field)
            new_values[field] = changes[field]
            setattr(user, field, changes[field])
    if new_values:
        entries.append(_audit(
            user_id=user.id,
            action="profile_update",
            old_values=old_values,
            new_values=new_values,
            actor_id=actor_id,
            ip_address=ip_address,
            user_agent=user_agent,
        ))

    if entries:
        user.updated_by_user_id = actor_id
    db.session.flush()
    return {"user": user.to_dict(), "audit_logs": [entry.to_dict() for entry in entries]}
