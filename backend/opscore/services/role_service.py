# Overview: Role, permission and profile management guarded by the admin-safety and rate-limit rules.

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from . import audit_service, notification_service
from .storage_errors import StorageError
from .storage_gateway import get_gateway
from opscore.authorization import (
    ALL_ROLES,
    ELEVATED_ROLES,
    ROLE_ADMIN,
    PermissionDeniedError,
    has_role,
    load_actor,
    require_role,
)
from opscore.validation import ConflictError, ValidationError, parse_id

logger = logging.getLogger(__name__)

PERMISSION_OPERATIONS = ("add", "remove", "replace")


@dataclass(frozen=True)
class RoleChangeCheck:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def get_admin_count() -> int:
    return get_gateway().count("users", {"role": ROLE_ADMIN, "is_active": True})


def validate_role_change(
    user_id: int,
    new_role: str,
    current_role: Optional[str] = None,
    admin_count: Optional[int] = None,
) -> RoleChangeCheck:
    """
    Business rules for a single role change, independent of who asks:
    a real change to a known role, never demoting the last active admin, and
    at most ROLE_CHANGE_LIMIT changes per subject in ROLE_CHANGE_WINDOW_HOURS.

    ``admin_count`` overrides the stored active-admin count, for callers that
    validate several changes before applying any.
    """
    if new_role not in ALL_ROLES:
        return RoleChangeCheck(False, f"Invalid role: {new_role}")

    if current_role is None:
        users = get_gateway().query("users", {"id": user_id})
        if not users:
            return RoleChangeCheck(False, f"User {user_id} not found")
        current_role = users[0]["role"]

    if current_role == new_role:
        return RoleChangeCheck(False, f"User already has role {new_role}")

    if admin_count is None:
        admin_count = get_admin_count()
    if current_role == ROLE_ADMIN and admin_count <= 1:
        return RoleChangeCheck(False, "Cannot demote the last admin user. At least one admin must remain.")

    limit = int(current_app.config.get("ROLE_CHANGE_LIMIT", 3))
    window = int(current_app.config.get("ROLE_CHANGE_WINDOW_HOURS", 24))
    if audit_service.get_recent_role_changes(user_id, window) >= limit:
        return RoleChangeCheck(
            False,
            f"Too many role changes for this user in the last {window} hours. Please try again later.",
        )

    return RoleChangeCheck(True)


def _notify_user_of_role_change(user_id: int, old_role: str, new_role: str) -> None:
    try:
        notification_service.create_system_notification(
            type="role_change",
            title="Your role has changed",
            message=f"Your role was changed from {old_role} to {new_role}. Sign in again to refresh your access.",
            severity="info",
            metadata={"oldRole": old_role, "newRole": new_role},
            target_user_id=user_id,
        )
    except StorageError as exc:
        logger.error("Could not notify user %s of role change: %s", user_id, exc.details)


def change_user_role(
    user_id: int,
    new_role: str,
    admin_id: Optional[int],
    reason: Optional[str] = None,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict:
    """Change one user's role and record it. Returns {"user", "audit_log"}."""
    require_role(admin_id, ELEVATED_ROLES, action="Changing user roles")
    if new_role not in ALL_ROLES:
        raise ValidationError(f"Invalid role: {new_role}")

    users = get_gateway().query("users", {"id": user_id})
    if not users:
        raise ValidationError(f"User {user_id} not found")
    old_role = users[0]["role"]

    check = validate_role_change(user_id, new_role, old_role)
    if not check:
        logger.warning("Role change rejected: user=%s %s -> %s: %s", user_id, old_role, new_role, check.reason)
        raise ConflictError(f"Invalid role change: {check.reason}")

    result = get_gateway().rpc(
        "change_user_role",
        {
            "user_id": user_id,
            "new_role": new_role,
            "actor_id": admin_id,
            "reason": reason,
            "ip_address": ip_address,
            "user_agent": user_agent,
        },
    )
    logger.info("Role changed: user=%s %s -> %s by %s", user_id, old_role, new_role, admin_id)
    _notify_user_of_role_change(user_id, old_role, new_role)
    notification_service.success(f"Role updated to {new_role}")
    return result


def bulk_role_update(
    changes: list[dict],
    admin_id: Optional[int],
    *,
    notify_users: bool = True,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict:
    """
    Validate every change, then apply the valid ones in one transaction.

    Returns {"success", "results": [{"user_id", "success", "message"}]};
    success is True only when every requested change was applied.
    """
    require_role(admin_id, ELEVATED_ROLES, action="Changing user roles")
    if not isinstance(changes, list) or not changes:
        raise ValidationError("changes must be a non-empty list")

    gateway = get_gateway()
    results, valid, old_roles, seen = [], [], {}, set()
    # Active admins left once the changes accepted so far are applied.
    admin_count = get_admin_count()
    for index, change in enumerate(changes):
        if not isinstance(change, dict):
            raise ValidationError(f"changes[{index}] must be an object")
        user_id = parse_id(change.get("user_id"), f"changes[{index}].user_id")
        new_role = change.get("new_role") or change.get("role")

        if user_id in seen:
            results.append({"user_id": user_id, "success": False, "message": "Duplicate user in request"})
            continue
        seen.add(user_id)

        users = gateway.query("users", {"id": user_id})
        if not users:
            results.append({"user_id": user_id, "success": False, "message": f"User {user_id} not found"})
            continue
        old_roles[user_id] = users[0]["role"]

        check = validate_role_change(user_id, new_role, old_roles[user_id], admin_count=admin_count)
        if not check:
            results.append({
                "user_id": user_id,
                "success": False,
                "message": f"Invalid role change: {old_roles[user_id]} -> {new_role}: {check.reason}",
            })
            continue
        if users[0]["is_active"]:
            if old_roles[user_id] == ROLE_ADMIN:
                admin_count -= 1
            elif new_role == ROLE_ADMIN:
                admin_count += 1
        valid.append({"user_id": user_id, "new_role": new_role, "reason": change.get("reason")})
        results.append({"user_id": user_id, "success": True, "message": "Role updated successfully"})

    if not valid:
        logger.warning("Bulk role update rejected every change (%d requested)", len(changes))
        return {"success": False, "results": results}

    gateway.rpc(
        "bulk_change_user_roles",
        {"changes": valid, "actor_id": admin_id, "ip_address": ip_address, "user_agent": user_agent},
    )

    if notify_users:
        for change in valid:
            _notify_user_of_role_change(change["user_id"], old_roles[change["user_id"]], change["new_role"])

    applied = len(valid)
    notification_service.success(f"{applied} role change{'s' if applied != 1 else ''} applied")
    return {"success": all(r["success"] for r in results), "results": results}


def _valid_permission(permission) -> bool:
    if not isinstance(permission, str):
        return False
    resource, sep, action = permission.partition(":")
    return bool(sep and resource.strip() and action.strip())


def manage_user_permissions(
    user_id: int,
    permissions: list[str],
    admin_id: Optional[int],
    operation: str = "replace",
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict:
    """Add, remove or replace a user's resource:action grants."""
    require_role(admin_id, ELEVATED_ROLES, action="Managing user permissions")
    if operation not in PERMISSION_OPERATIONS:
        raise ValidationError(f"operation must be one of: {', '.join(PERMISSION_OPERATIONS)}")
    if not isinstance(permissions, list):
        raise ValidationError("permissions must be a list")
    bad = [p for p in permissions if not _valid_permission(p)]
    if bad:
        raise ValidationError(f"Permissions must look like resource:action, got: {bad}")

    users = get_gateway().query("users", {"id": user_id})
    if not users:
        raise ValidationError(f"User {user_id} not found")
    current = set(users[0]["custom_permissions"])

    if operation == "add":
        updated = current | set(permissions)
    elif operation == "remove":
        updated = current - set(permissions)
    else:
        updated = set(permissions)

    result = get_gateway().rpc(
        "update_user_permissions",
        {
            "user_id": user_id,
            "permissions": sorted(updated),
            "actor_id": admin_id,
            "operation": operation,
            "ip_address": ip_address,
            "user_agent": user_agent,
        },
    )
    if result["audit_log"] is not None:
        notification_service.success("Permissions updated")
    return result


def update_user_profile(
    user_id: int,
    changes: dict,
    actor_id: Optional[int],
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict:
    """
    Users may edit their own name and email. Admins may edit anyone's profile,
    including designation.
    """
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("No profile changes given")
    actor = load_actor(actor_id)
    if actor is None:
        raise PermissionDeniedError("Authentication required")
    is_admin = has_role(actor, ELEVATED_ROLES)
    if actor["id"] != user_id and not is_admin:
        raise PermissionDeniedError("Access denied: You can only edit your own profile")
    if "designation" in changes and not is_admin:
        raise PermissionDeniedError("Access denied: Admin role required to change designation")
    unknown = set(changes) - {"name", "email", "designation"}
    if unknown:
        raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
    if "name" in changes and not str(changes["name"] or "").strip():
        raise ValidationError("name must not be empty")

    result = get_gateway().rpc(
        "update_user_profile",
        {
            "user_id": user_id,
            "changes": changes,
            "actor_id": actor_id,
            "ip_address": ip_address,
            "user_agent": user_agent,
        },
    )
    if result["audit_logs"]:
        notification_service.success("Profile updated")
    return result


def get_user_count_by_role() -> dict[str, int]:
    gateway = get_gateway()
    return {role: gateway.count("users", {"role": role, "is_active": True}) for role in ALL_ROLES}


def get_role_change_history(user_id: int, requesting_actor_id: Optional[int], limit: int = 20) -> list[dict]:
    page = audit_service.get_audit_logs(
        {"user_id": user_id, "action": audit_service.ROLE_CHANGE, "limit": limit},
        requesting_actor_id,
    )
    return page["logs"]
