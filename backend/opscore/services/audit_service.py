# Overview: Audit trail recorder; writes immutable before/after snapshots and serves filtered, paginated reads.

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import Any, Optional, Union

from flask import current_app

from .storage_gateway import get_gateway
from opscore.authorization import ELEVATED_ROLES, PermissionDeniedError, has_role, load_actor, require_role
from opscore.time_utils import coerce_datetime, hours_ago, parse_iso_datetime
from opscore.validation import ValidationError

logger = logging.getLogger(__name__)

ROLE_CHANGE = "role_change"
PERMISSION_CHANGE = "permission_change"
PROFILE_UPDATE = "profile_update"
DESIGNATION_CHANGE = "designation_change"

AUDIT_ACTIONS = (ROLE_CHANGE, PERMISSION_CHANGE, PROFILE_UPDATE, DESIGNATION_CHANGE)

MAX_PAGE_SIZE = 200
STATS_WINDOW_DAYS = 30


@dataclass
class AuditLogFilter:
    user_id: Optional[int] = None
    action: Union[str, list, None] = None
    performed_by: Optional[int] = None
    from_date: Any = None
    to_date: Any = None
    limit: Optional[int] = None
    offset: int = 0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "AuditLogFilter":
        data = data or {}
        known = {"user_id", "action", "performed_by", "from_date", "to_date", "limit", "offset"}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown audit log filters: {', '.join(sorted(unknown))}")
        return cls(**data)

    def to_filters(self) -> dict:
        filters: dict = {}
        if self.user_id is not None:
            filters["user_id"] = int(self.user_id)
        if self.action:
            actions = self.action if isinstance(self.action, (list, tuple)) else [self.action]
            bad = [a for a in actions if a not in AUDIT_ACTIONS]
            if bad:
                raise ValidationError(f"Unknown audit actions: {', '.join(bad)}")
            filters["action"] = list(actions) if len(actions) > 1 else actions[0]
        if self.performed_by is not None:
            filters["performed_by"] = int(self.performed_by)
        try:
            if self.from_date:
                filters["timestamp__gte"] = coerce_datetime(self.from_date)
            if self.to_date:
                filters["timestamp__lte"] = coerce_datetime(self.to_date, end_of_day=True)
        except ValueError:
            raise ValidationError("from_date/to_date must be ISO-8601 dates")
        return filters


def create_audit_log(
    user_id: int,
    action: str,
    old_values: Optional[dict],
    new_values: Optional[dict],
    actor_id: Optional[int],
    metadata: Optional[dict] = None,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict:
    """Append one audit entry. Entries are never updated or deleted."""
    if action not in AUDIT_ACTIONS:
        raise ValidationError(f"Unknown audit action: {action}")
    row = get_gateway().insert(
        "audit_log_entries",
        {
            "user_id": user_id,
            "action": action,
            "old_values": old_values or {},
            "new_values": new_values or {},
            "performed_by": actor_id,
            "details": metadata,
            "ip_address": ip_address,
            "user_agent": user_agent,
        },
    )[0]
    logger.info("Audit: user=%s action=%s performed_by=%s", user_id, action, actor_id)
    return row


def default_page_size() -> int:
    return int(current_app.config.get("AUDIT_LOG_PAGE_SIZE", 20))


def require_audit_reader(actor_id: Optional[int]) -> dict:
    return require_role(actor_id, ELEVATED_ROLES, action="Viewing audit logs")


def get_audit_logs(filter: Union[AuditLogFilter, dict, None], requesting_actor_id: Optional[int]) -> dict:
    """
    One page of audit entries, newest first. Admin only.

    Returns {"logs", "total", "page", "page_size", "total_pages"} where page is
    derived from offset and page_size.
    """
    require_audit_reader(requesting_actor_id)
    if not isinstance(filter, AuditLogFilter):
        filter = AuditLogFilter.from_dict(filter)

    limit = filter.limit or default_page_size()
    offset = filter.offset or 0
    if not (1 <= limit <= MAX_PAGE_SIZE):
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if offset < 0:
        raise ValidationError("offset must not be negative")

    filters = filter.to_filters()
    gateway = get_gateway()
    total = gateway.count("vw_audit_logs", filters)
    logs = gateway.query(
        "vw_audit_logs",
        filters,
        order_by=["-timestamp", "-id"],
        limit=limit,
        offset=offset,
    )
    return {
        "logs": logs,
        "total": total,
        "page": offset // limit + 1,
        "page_size": limit,
        "total_pages": math.ceil(total / limit),
    }


def get_user_audit_logs(user_id: int, requesting_actor_id: Optional[int], limit: int = 50) -> list[dict]:
    """Users may read their own entries; admins may read anyone's."""
    if requesting_actor_id != user_id:
        if not has_role(load_actor(requesting_actor_id), ELEVATED_ROLES):
            raise PermissionDeniedError("Access denied: You can only view your own audit logs")
    return get_gateway().query(
        "vw_audit_logs",
        {"user_id": user_id},
        order_by=["-timestamp", "-id"],
        limit=limit,
    )


def get_user_recent_activity(user_id: int, limit: int = 10) -> list[dict]:
    """Entries where the user is the subject or the actor, newest first."""
    gateway = get_gateway()
    rows = {}
    for column in ("user_id", "performed_by"):
        for row in gateway.query("vw_audit_logs", {column: user_id}, order_by=["-timestamp", "-id"], limit=limit):
            rows[row["id"]] = row
    ordered = sorted(rows.values(), key=lambda r: (r["timestamp"], r["id"]), reverse=True)
    return ordered[:limit]


def get_recent_role_changes(user_id: int, hours: int = 24) -> int:
    return get_gateway().count(
        "audit_log_entries",
        {"user_id": user_id, "action": ROLE_CHANGE, "timestamp__gte": hours_ago(hours)},
    )


def get_audit_stats(requesting_actor_id: Optional[int]) -> dict:
    require_role(requesting_actor_id, ELEVATED_ROLES, action="Viewing audit statistics")
    gateway = get_gateway()
    action_counts = {action: gateway.count("audit_log_entries", {"action": action}) for action in AUDIT_ACTIONS}
    recent = gateway.query(
        "vw_audit_logs",
        {"timestamp__gte": hours_ago(STATS_WINDOW_DAYS * 24)},
    )
    by_actor = Counter((row["performed_by"], row["performed_by_name"]) for row in recent)
    return {
        "action_counts": action_counts,
        "recent_activity_count": len(recent),
        "top_users": [
            {"performed_by": actor_id, "performed_by_name": name, "count": count}
            for (actor_id, name), count in by_actor.most_common(5)
        ],
    }


def get_detailed_changes(entry: dict) -> list[dict]:
    """Field-level differences between an entry's old and new values."""
    old = entry.get("old_values") or {}
    new = entry.get("new_values") or {}
    changes = []
    for key in sorted(set(old) | set(new)):
        if old.get(key) != new.get(key):
            changes.append({"field": key, "old_value": old.get(key), "new_value": new.get(key)})
    return changes


def format_audit_log_entry(entry: dict) -> str:
    when = parse_iso_datetime(entry.get("timestamp"))
    timestamp = when.strftime("%Y-%m-%d %H:%M") if when else "unknown time"
    subject = entry.get("user_name") or "Unknown User"
    actor = entry.get("performed_by_name") or "Unknown User"
    old = entry.get("old_values") or {}
    new = entry.get("new_values") or {}

    action = entry.get("action")
    if action == PROFILE_UPDATE:
        description = "updated profile information"
    elif action == ROLE_CHANGE:
        description = f"changed role from {old.get('role')} to {new.get('role')}"
    elif action == PERMISSION_CHANGE:
        description = "modified permissions"
    elif action == DESIGNATION_CHANGE:
        description = (
            f'changed designation from "{old.get("designation") or "none"}" '
            f'to "{new.get("designation") or "none"}"'
        )
    else:
        description = str(action).replace("_", " ")

    return f"{timestamp}: {actor} {description} for {subject}"
