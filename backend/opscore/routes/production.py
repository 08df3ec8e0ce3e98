# Overview: Flask API routes for production batches and stock lots; parses input and returns JSON responses.

# backend/opscore/routes/production.py
"""
Production routes.

Provides endpoints for:
- Batch creation, pre-validation, rollback and the batch state machine
- Yield reporting by date range
- Stock lot reads (FIFO availability, single-lot checks, movement history)
"""

from flask import Blueprint, g, request

from ..authorization import PRODUCTION_ROLES
from ..decorators import require_actor, require_role
from ..services import inventory_ledger_service, production_service
from ..validation import ValidationError, require_fields
from .responses import api_response, json_body


production_bp = Blueprint("production", __name__, url_prefix="/api/production")


# =============================================================================
# BATCHES
# =============================================================================

@production_bp.post("/batches")
@require_actor
@require_role(*PRODUCTION_ROLES)
def create_batch_route():
    """
    Create a batch with its inputs and stock decrements in one write.

    Body: {"batch_number": "...", "inputs": [{"material_intake_id": 1, "quantity_used": 20}]}

    Returns 400 with one entry per invalid input in "errors" when
    pre-validation fails; nothing is written in that case.
    """
    result = production_service.create_production_batch(json_body(), g.current_user["id"])
    return api_response(result, 201)


@production_bp.post("/batches/validate")
@require_actor
@require_role(*PRODUCTION_ROLES)
def validate_batch_route():
    data = json_body()
    result = production_service.validate_production_batch_inputs(data.get("inputs"))
    return api_response(result)


@production_bp.get("/batches/<int:batch_id>")
@require_actor
@require_role(*PRODUCTION_ROLES)
def get_batch_route(batch_id: int):
    result = production_service.get_batch_with_inputs(batch_id)
    if result is None:
        return api_response({"error": "Production batch not found"}, 404)
    return api_response(result)


@production_bp.post("/batches/<int:batch_id>/rollback")
@require_actor
@require_role(*PRODUCTION_ROLES)
def rollback_batch_route(batch_id: int):
    """
    Restore the stock a batch consumed.

    Body: {"reason": "...", "inputs": [...]}; inputs defaults to the batch's
    recorded inputs.
    """
    data = json_body()
    require_fields(data, "reason")
    inputs = data.get("inputs")
    if inputs is not None and not isinstance(inputs, list):
        raise ValidationError("inputs must be a list")
    result = production_service.rollback_production_batch(
        batch_id, inputs, data["reason"], g.current_user["id"],
    )
    return api_response(result)


@production_bp.post("/batches/<int:batch_id>/complete")
@require_actor
@require_role(*PRODUCTION_ROLES)
def complete_batch_route(batch_id: int):
    data = json_body()
    require_fields(data, "output_litres")
    batch = production_service.complete_production_batch(
        batch_id, data["output_litres"], data.get("quality_grade"),
    )
    return api_response({"batch": batch})


@production_bp.post("/batches/<int:batch_id>/status")
@require_actor
@require_role(*PRODUCTION_ROLES)
def update_batch_status_route(batch_id: int):
    data = json_body()
    require_fields(data, "status")
    batch = production_service.update_batch_status(
        batch_id,
        data["status"],
        quality_grade=data.get("quality_grade"),
        output_litres=data.get("output_litres"),
    )
    return api_response({"batch": batch})


@production_bp.get("/yield")
@require_actor
@require_role(*PRODUCTION_ROLES)
def batch_yield_route():
    """
    Query params:
    - start: ISO date (inclusive)
    - end: ISO date (inclusive, whole day)
    """
    rows = production_service.get_batch_yield_by_date_range(
        request.args.get("start"), request.args.get("end"),
    )
    return api_response({"batches": rows, "count": len(rows)})


# =============================================================================
# STOCK LOTS
# =============================================================================

@production_bp.get("/lots")
@require_actor
@require_role(*PRODUCTION_ROLES)
def available_lots_route():
    """Unexpired lots with stock for ?material=..., oldest intake first."""
    material = request.args.get("material")
    if not material:
        raise ValidationError("material query parameter is required")
    lots = inventory_ledger_service.get_available_lots(material)
    return api_response({"lots": lots, "count": len(lots)})


@production_bp.post("/lots/<int:lot_id>/check")
@require_actor
@require_role(*PRODUCTION_ROLES)
def check_lot_route(lot_id: int):
    data = json_body()
    require_fields(data, "quantity")
    check = inventory_ledger_service.check_stock(lot_id, data["quantity"])
    return api_response({"check": check.to_dict()})


@production_bp.get("/lots/<int:lot_id>/transactions")
@require_actor
@require_role(*PRODUCTION_ROLES)
def lot_transactions_route(lot_id: int):
    limit = request.args.get("limit", 100, type=int)
    rows = inventory_ledger_service.get_transaction_history(lot_id, limit=limit)
    return api_response({"transactions": rows, "count": len(rows)})


@production_bp.post("/lots/allocate")
@require_actor
@require_role(*PRODUCTION_ROLES)
def allocate_lots_route():
    """
    Suggest batch inputs for a material, oldest lots first.

    Body: {"material_name": "Olive", "quantity": 120}
    """
    data = json_body()
    require_fields(data, "material_name", "quantity")
    inputs = inventory_ledger_service.allocate_fifo(data["material_name"], data["quantity"])
    return api_response({"inputs": inputs})
