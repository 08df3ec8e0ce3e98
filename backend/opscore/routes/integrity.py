# Overview: Flask API routes for the data integrity auditor and the inventory write outbox.

# backend/opscore/routes/integrity.py
"""
Integrity routes.

Provides endpoints for:
- Running every integrity check and reading open / historical issues
- Resolving issues and acknowledging alerts
- Reading and tuning per-issue-type alert thresholds
- Inspecting and draining queued inventory writes

All endpoints are admin only.
"""

from flask import Blueprint, g, request

from ..authorization import ELEVATED_ROLES
from ..decorators import require_actor, require_role
from ..services import integrity_service, outbox_service
from ..validation import require_fields
from .responses import api_response, json_body


integrity_bp = Blueprint("integrity", __name__, url_prefix="/api/integrity")


# =============================================================================
# CHECKS AND ISSUES
# =============================================================================

@integrity_bp.post("/run")
@require_actor
@require_role(*ELEVATED_ROLES)
def run_checks_route():
    """
    Run all checks, store new issues and raise threshold alerts.

    Always 200; "success" is false when a check could not run.
    """
    return api_response(integrity_service.run_all_checks())


@integrity_bp.get("/issues")
@require_actor
@require_role(*ELEVATED_ROLES)
def unresolved_issues_route():
    issues = integrity_service.get_unresolved_issues()
    return api_response({"issues": issues, "count": len(issues)})


@integrity_bp.get("/issues/history")
@require_actor
@require_role(*ELEVATED_ROLES)
def issue_history_route():
    limit = request.args.get("limit", 50, type=int)
    issues = integrity_service.get_issue_history(limit=limit)
    return api_response({"issues": issues, "count": len(issues)})


@integrity_bp.post("/issues/<int:issue_id>/resolve")
@require_actor
@require_role(*ELEVATED_ROLES)
def resolve_issue_route(issue_id: int):
    data = json_body()
    require_fields(data, "resolution")
    issue = integrity_service.resolve_issue(issue_id, data["resolution"], g.current_user["id"])
    return api_response({"issue": issue})


# =============================================================================
# ALERTS
# =============================================================================

@integrity_bp.get("/alerts")
@require_actor
@require_role(*ELEVATED_ROLES)
def active_alerts_route():
    alerts = integrity_service.get_active_alerts()
    return api_response({"alerts": alerts, "count": len(alerts)})


@integrity_bp.post("/alerts/<int:alert_id>/acknowledge")
@require_actor
@require_role(*ELEVATED_ROLES)
def acknowledge_alert_route(alert_id: int):
    alert = integrity_service.acknowledge_alert(alert_id, g.current_user["id"])
    return api_response({"alert": alert})


@integrity_bp.get("/alert-configs")
@require_actor
@require_role(*ELEVATED_ROLES)
def alert_configs_route():
    return api_response({"configs": integrity_service.get_alert_configs()})


@integrity_bp.patch("/alert-configs/<issue_type>")
@require_actor
@require_role(*ELEVATED_ROLES)
def update_alert_config_route(issue_type: str):
    """
    Body: any of {"enabled", "threshold", "severity", "channels"}

    Changes last until the process restarts; set INTEGRITY_ALERT_OVERRIDES
    for a permanent change.
    """
    config = integrity_service.update_alert_config(issue_type, **json_body())
    return api_response({"issue_type": issue_type, "config": config.to_dict()})


# =============================================================================
# PENDING INVENTORY WRITES
# =============================================================================

@integrity_bp.get("/pending-writes")
@require_actor
@require_role(*ELEVATED_ROLES)
def pending_writes_route():
    """
    Query params:
    - reference_type: e.g. order
    - reference_id: int
    """
    rows = outbox_service.get_pending_writes(
        reference_type=request.args.get("reference_type"),
        reference_id=request.args.get("reference_id", type=int),
    )
    return api_response({"pending_writes": rows, "count": len(rows)})


@integrity_bp.post("/pending-writes/drain")
@require_actor
@require_role(*ELEVATED_ROLES)
def drain_pending_writes_route():
    limit = request.args.get("limit", 50, type=int)
    return api_response(outbox_service.drain_outbox(limit=limit))
