# backend/opscore/routes/system.py
"""
System health and login throttling endpoints.

The health check exercises the storage gateway the same way every service
does, so a degraded database shows up here before it shows up as failed
orders. The login-attempt endpoints are called by the upstream identity layer
after each sign-in attempt.
"""

import time

from flask import Blueprint, current_app, request

from ..services import login_throttle_service, outbox_service
from ..services.procedures import registered_procedures
from ..services.storage_errors import StorageError
from ..services.storage_gateway import get_gateway
from ..time_utils import to_utc_z, utcnow
from ..validation import ValidationError, require_fields
from .responses import api_response, json_body

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def _elapsed_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)


def check_database_health() -> dict:
    """
    Check storage connectivity and basic reads.

    Returns dict with status and details.
    """
    start_time = time.time()
    gateway = get_gateway()
    if not gateway.validate_connection():
        return {
            "status": "unhealthy",
            "latency_ms": _elapsed_ms(start_time),
            "error": "Database unreachable",
        }
    try:
        details = {
            "users": gateway.count("users", notify=False),
            "orders": gateway.count("orders", notify=False),
            "stock_lots": gateway.count("material_intake_records", notify=False),
        }
    except StorageError:
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": _elapsed_ms(start_time),
            "error": "Database error",
        }
    return {
        "status": "healthy",
        "latency_ms": _elapsed_ms(start_time),
        "details": details,
    }


def check_inventory_outbox_health() -> dict:
    """
    Queued inventory writes waiting for replay. A backlog is degraded, not
    unhealthy: orders still commit, stock is just behind.
    """
    start_time = time.time()
    try:
        pending = len(outbox_service.get_pending_writes())
        failed = get_gateway().count(outbox_service.OUTBOX_TABLE, {"status": "failed"}, notify=False)
    except StorageError:
        current_app.logger.exception("Outbox health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": _elapsed_ms(start_time),
            "error": "Outbox unavailable",
        }

    result = {
        "status": "healthy",
        "latency_ms": _elapsed_ms(start_time),
        "details": {"pending": pending, "failed": failed},
    }
    if failed:
        result["status"] = "degraded"
        result["warning"] = f"{failed} inventory write(s) need manual reconciliation"
    return result


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: storage unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    if database_health["status"] == "unhealthy":
        outbox_health = {"status": "unhealthy", "latency_ms": 0.0, "error": "Skipped: database unreachable"}
    else:
        outbox_health = check_inventory_outbox_health()

    all_checks = [database_health, outbox_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": _elapsed_ms(start_time),
        "procedures": registered_procedures(),
        "checks": {
            "database": database_health,
            "inventory_outbox": outbox_health,
        },
    }

    return response, http_status


# =============================================================================
# LOGIN THROTTLING
# =============================================================================

@system_bp.post("/login-attempts")
def record_login_attempt():
    """
    Body: {"identity": "user@example.com", "origin": "203.0.113.9", "outcome": "failure" | "success"}

    A failure is counted; a success clears the counter. Returns the lockout
    status, with 423 while the identity is locked.
    """
    data = json_body()
    require_fields(data, "identity", "outcome")
    identity, origin = data["identity"], data.get("origin")

    if data["outcome"] == "success":
        login_throttle_service.clear_attempts(identity, origin)
        status = login_throttle_service.get_lockout_status(identity, origin)
    elif data["outcome"] == "failure":
        # Failures during a lockout do not extend it.
        locked, _ = login_throttle_service.is_locked(identity, origin)
        if locked:
            status = login_throttle_service.get_lockout_status(identity, origin)
        else:
            status = login_throttle_service.record_failed_attempt(identity, origin)
    else:
        raise ValidationError("outcome must be failure or success")

    return api_response({"status": status}, 423 if status["locked"] else 200)


@system_bp.get("/login-attempts")
def login_attempt_status():
    """Query params: identity (required), origin."""
    identity = request.args.get("identity")
    if not identity:
        raise ValidationError("identity query parameter is required")
    status = login_throttle_service.get_lockout_status(identity, request.args.get("origin"))
    return api_response({"status": status})
