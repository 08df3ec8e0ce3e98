# Overview: Flask API routes for orders; parses input and returns JSON responses.

# backend/opscore/routes/orders.py
"""Order API routes with role enforcement"""

from flask import Blueprint, g

from ..authorization import FINANCE_ROLES, ORDER_ROLES
from ..decorators import require_actor, require_role
from ..services import order_service
from ..validation import require_fields
from .responses import api_response, json_body


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("/")
@require_actor
@require_role(*ORDER_ROLES)
def create_order_route():
    """
    Create an order with its invoice, then decrement stock per item.

    Available to: admin, sales_manager

    Stock decrements that fail do not fail the request; they are listed in
    inventory_failures and queued for replay.
    """
    result = order_service.create_order(json_body(), g.current_user["id"])
    return api_response(result, 201)


@orders_bp.get("/<int:order_id>")
@require_actor
@require_role(*FINANCE_ROLES)
def get_order_route(order_id: int):
    details = order_service.get_order_details(order_id)
    if details is None:
        return api_response({"error": "Order not found"}, 404)
    return api_response(details)


@orders_bp.post("/<int:order_id>/status")
@require_actor
@require_role(*ORDER_ROLES)
def update_status_route(order_id: int):
    """
    Move an order along its lifecycle.

    Body: {"status": "confirmed"}
    """
    data = json_body()
    require_fields(data, "status")
    order = order_service.update_order_status(order_id, data["status"], g.current_user["id"])
    return api_response({"order": order})


@orders_bp.post("/<int:order_id>/payment")
@require_actor
@require_role(*FINANCE_ROLES)
def update_payment_route(order_id: int):
    """
    Body: {"payment_status": "partial", "paid_amount": 50.00}

    Available to: admin, finance, sales_manager
    """
    data = json_body()
    require_fields(data, "payment_status")
    result = order_service.update_payment_status(
        order_id,
        data["payment_status"],
        data.get("paid_amount"),
        g.current_user["id"],
    )
    return api_response(result)


@orders_bp.post("/<int:order_id>/cancel")
@require_actor
@require_role(*ORDER_ROLES)
def cancel_order_route(order_id: int):
    data = json_body()
    result = order_service.cancel_order(order_id, data.get("reason"), g.current_user["id"])
    return api_response(result)
