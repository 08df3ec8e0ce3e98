# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

# backend/opscore/routes/admin.py
"""
Admin routes for role, permission and profile management and the audit trail.

Provides endpoints for:
- Role changes (single and bulk) guarded by the last-admin and rate-limit rules
- Permission grants (add, remove, replace)
- Profile updates (self-service; designation is admin only)
- Audit log reads (filtered, paginated) and statistics

Role checks for these endpoints live in the services so that every caller,
not only HTTP, gets them.
"""

from flask import Blueprint, g, request

from ..decorators import require_actor
from ..services import audit_service, role_service
from ..validation import ValidationError, require_fields
from .responses import api_response, client_context, json_body

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


# =============================================================================
# ROLES
# =============================================================================

@admin_bp.post("/users/<int:user_id>/role")
@require_actor
def change_role_route(user_id: int):
    """
    Body: {"role": "production", "reason": "..."}

    409 when the change would demote the last admin or exceeds the per-user
    rate limit.
    """
    data = json_body()
    require_fields(data, "role")
    result = role_service.change_user_role(
        user_id, data["role"], g.current_user["id"], data.get("reason"), **client_context(),
    )
    return api_response(result)


@admin_bp.post("/users/roles/bulk")
@require_actor
def bulk_role_route():
    """
    Body: {"changes": [{"user_id": 2, "new_role": "viewer"}], "notify_users": true}

    Returns a per-user result list; invalid entries do not block valid ones.
    """
    data = json_body()
    result = role_service.bulk_role_update(
        data.get("changes"),
        g.current_user["id"],
        notify_users=bool(data.get("notify_users", True)),
        **client_context(),
    )
    return api_response(result)


@admin_bp.get("/roles/counts")
@require_actor
def role_counts_route():
    return api_response({"counts": role_service.get_user_count_by_role()})


@admin_bp.get("/users/<int:user_id>/role-history")
@require_actor
def role_history_route(user_id: int):
    limit = request.args.get("limit", 20, type=int)
    history = role_service.get_role_change_history(user_id, g.current_user["id"], limit=limit)
    return api_response({"history": history, "count": len(history)})


# =============================================================================
# PERMISSIONS AND PROFILES
# =============================================================================

@admin_bp.post("/users/<int:user_id>/permissions")
@require_actor
def manage_permissions_route(user_id: int):
    """
    Body: {"permissions": ["reports:export"], "operation": "add" | "remove" | "replace"}
    """
    data = json_body()
    require_fields(data, "permissions")
    result = role_service.manage_user_permissions(
        user_id,
        data["permissions"],
        g.current_user["id"],
        data.get("operation", "replace"),
        **client_context(),
    )
    return api_response(result)


@admin_bp.patch("/users/<int:user_id>/profile")
@require_actor
def update_profile_route(user_id: int):
    """Body: any of {"name", "email", "designation"}"""
    result = role_service.update_user_profile(
        user_id, json_body(), g.current_user["id"], **client_context(),
    )
    return api_response(result)


# =============================================================================
# AUDIT TRAIL
# =============================================================================

def _int_arg(name: str):
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


@admin_bp.get("/audit-logs")
@require_actor
def audit_logs_route():
    """
    Query params:
    - user_id, performed_by: int
    - action: one or more of role_change, permission_change, profile_update,
      designation_change (repeat the parameter for several)
    - from_date, to_date: ISO dates, inclusive
    - page (1-based) and page_size, or limit and offset
    """
    page_size = _int_arg("page_size") or _int_arg("limit")
    offset = _int_arg("offset")
    page = _int_arg("page")
    if page is not None:
        if page < 1:
            raise ValidationError("page must be at least 1")
        size = page_size or audit_service.default_page_size()
        offset = (page - 1) * size
        page_size = size

    actions = request.args.getlist("action")
    filter = audit_service.AuditLogFilter(
        user_id=_int_arg("user_id"),
        action=actions if len(actions) > 1 else (actions[0] if actions else None),
        performed_by=_int_arg("performed_by"),
        from_date=request.args.get("from_date"),
        to_date=request.args.get("to_date"),
        limit=page_size,
        offset=offset or 0,
    )
    result = audit_service.get_audit_logs(filter, g.current_user["id"])
    for entry in result["logs"]:
        entry["summary"] = audit_service.format_audit_log_entry(entry)
        entry["changes"] = audit_service.get_detailed_changes(entry)
    return api_response(result)


@admin_bp.get("/users/<int:user_id>/audit-logs")
@require_actor
def user_audit_logs_route(user_id: int):
    limit = request.args.get("limit", 50, type=int)
    logs = audit_service.get_user_audit_logs(user_id, g.current_user["id"], limit=limit)
    return api_response({"logs": logs, "count": len(logs)})


@admin_bp.get("/users/<int:user_id>/activity")
@require_actor
def user_activity_route(user_id: int):
    """A user's own recent activity; admins may read anyone's."""
    if user_id != g.current_user["id"]:
        audit_service.require_audit_reader(g.current_user["id"])
    limit = request.args.get("limit", 10, type=int)
    entries = audit_service.get_user_recent_activity(user_id, limit=limit)
    return api_response({"activity": entries, "count": len(entries)})


@admin_bp.get("/audit-logs/stats")
@require_actor
def audit_stats_route():
    return api_response({"stats": audit_service.get_audit_stats(g.current_user["id"])})
