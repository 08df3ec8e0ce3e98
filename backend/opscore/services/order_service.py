# Overview: Order creation (order + invoice compound write, then best-effort stock decrements) and order lifecycle.

from __future__ import annotations

import logging

from . import inventory_ledger_service, notification_service, outbox_service
from .storage_errors import StorageError
from .storage_gateway import get_gateway
from opscore.time_utils import utcnow
from opscore.validation import (
    ValidationError,
    parse_id,
    parse_money,
    parse_optional_datetime,
    parse_positive_quantity,
    reconcile_order_totals,
    require_fields,
)

logger = logging.getLogger(__name__)

"""
Order creation invariants (authoritative)

- The order, its items and its invoice are one compound write; if it fails
  nothing is created and no stock is touched.
- Stock decrements run only after the compound write committed, one per item,
  every item attempted even when an earlier one failed.
- A failed decrement never fails the order. It is reported as a warning and
  queued in the outbox for replay.
"""

ORDER_TRANSITIONS = {
    "draft": {"confirmed", "cancelled"},
    "confirmed": {"in_production", "cancelled"},
    "in_production": {"ready", "cancelled"},
    "ready": {"dispatched", "cancelled"},
    "dispatched": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}

PAYMENT_STATUSES = ("pending", "partial", "paid")


def generate_order_number() -> str:
    """
    ORD-<year>-<n> where n is the current order count + 1.

    Advisory only: two concurrent callers can compute the same number, in
    which case the unique constraint on order_number rejects the second write.
    """
    sequence = get_gateway().count("orders") + 1
    return f"ORD-{utcnow().year}-{sequence:04d}"


def _normalize_items(items) -> list[dict]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("items must be a list")
    normalized = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        batch_id = item.get("batch_id")
        normalized.append({
            "batch_id": parse_id(batch_id, f"items[{index}].batch_id") if batch_id is not None else None,
            "product_name": item.get("product_name") or f"Item {index + 1}",
            "packaging_type": item.get("packaging_type"),
            "quantity": parse_positive_quantity(item.get("quantity"), f"items[{index}].quantity"),
            "unit_price": parse_money(item.get("unit_price", 0) or 0, f"items[{index}].unit_price"),
        })
    return normalized


def _decrement_items(order: dict, items: list[dict], actor_id: int | None) -> list[dict]:
    failures = []
    for item in items:
        if item["batch_id"] is None:
            continue
        reason = f"Order {order['order_number']} - {item['product_name']}"
        try:
            inventory_ledger_service.decrement_stock(
                item["batch_id"],
                item["quantity"],
                order["id"],
                reference_type="order",
                reason=reason,
                actor_id=actor_id,
                notify=False,
            )
        except StorageError as exc:
            logger.error(
                "Failed to decrement inventory for batch %s on order %s: kind=%s details=%s",
                item["batch_id"], order["order_number"], exc.kind.value, exc.details,
            )
            failures.append({
                "batch_id": item["batch_id"],
                "product_name": item["product_name"],
                "quantity": float(item["quantity"]),
                "error": exc.message,
            })
            outbox_service.enqueue_inventory_write(
                lot_id=item["batch_id"],
                direction="decrement",
                quantity=item["quantity"],
                reference_type="order",
                reference_id=order["id"],
                reason=reason,
                actor_id=actor_id,
                error=f"{exc.kind.value}: {exc.details}",
            )
    return failures


def create_order(order_data: dict, actor_id: int | None = None) -> dict:
    """
    Create an order with its invoice, then decrement stock for each item.

    Returns {"order", "invoice", "items", "inventory_failures"}. Raises
    ValidationError for bad input and StorageError when the compound write
    fails.
    """
    if not isinstance(order_data, dict):
        raise ValidationError("order data must be an object")
    require_fields(order_data, "customer_id")
    customer_id = parse_id(order_data["customer_id"], "customer_id")
    totals = reconcile_order_totals(order_data)
    items = _normalize_items(order_data.get("items"))

    status = order_data.get("status") or "draft"
    if status not in ("draft", "confirmed"):
        raise ValidationError("New orders must start as draft or confirmed")
    payment_status = order_data.get("payment_status") or "pending"
    if payment_status != "pending":
        raise ValidationError("New orders start with payment_status pending")

    order_number = generate_order_number()
    invoice_data = {}
    if order_data.get("payment_terms") is not None:
        invoice_data["payment_terms"] = parse_id(order_data["payment_terms"], "payment_terms")

    result = get_gateway().rpc(
        "create_order_with_invoice",
        {
            "order_data": {
                "order_number": order_number,
                "customer_id": customer_id,
                "order_date": parse_optional_datetime(order_data.get("order_date"), "order_date"),
                "expected_delivery": parse_optional_datetime(order_data.get("expected_delivery"), "expected_delivery"),
                "status": status,
                "payment_status": payment_status,
                "notes": order_data.get("notes"),
                "created_by_user_id": actor_id,
                **totals,
            },
            "items": items,
            "invoice_data": invoice_data,
        },
    )
    order, invoice = result["order"], result["invoice"]
    logger.info("Order %s created with invoice %s", order["order_number"], invoice["invoice_number"])

    failures = _decrement_items(order, items, actor_id)

    if not failures:
        notification_service.success(
            f"Order {order['order_number']} created successfully with invoice {invoice['invoice_number']}"
        )
    else:
        notification_service.success(
            f"Order {order['order_number']} and invoice {invoice['invoice_number']} created successfully"
        )
        listed = ", ".join(f"{f['product_name']}: {f['error']}" for f in failures)
        notification_service.warning(
            f"Some inventory updates failed: {listed}. Please check manually.",
            order_id=order["id"],
            failed_batches=[f["batch_id"] for f in failures],
        )

    return {
        "order": order,
        "invoice": invoice,
        "items": result["items"],
        "inventory_failures": failures,
    }


def update_order_status(order_id: int, new_status: str, actor_id: int | None = None) -> dict:
    if new_status not in ORDER_TRANSITIONS:
        raise ValidationError(f"Unknown order status: {new_status}")
    if new_status == "cancelled":
        return cancel_order(order_id, reason=None, actor_id=actor_id)["order"]

    allowed_from = sorted(s for s, targets in ORDER_TRANSITIONS.items() if new_status in targets)
    order = get_gateway().rpc(
        "transition_order_status",
        {"order_id": order_id, "new_status": new_status, "allowed_from": allowed_from},
    )
    notification_service.success(f"Order status updated to {new_status}")
    return order


def update_payment_status(
    order_id: int,
    payment_status: str,
    paid_amount=None,
    actor_id: int | None = None,
) -> dict:
    if payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"payment_status must be one of: {', '.join(PAYMENT_STATUSES)}")
    amount = None
    if payment_status == "partial":
        if paid_amount is None:
            raise ValidationError("paid_amount is required for partial payments")
        amount = parse_money(paid_amount, "paid_amount", allow_zero=False)

    result = get_gateway().rpc(
        "update_order_payment",
        {
            "order_id": order_id,
            "payment_status": payment_status,
            "paid_amount": amount,
            "actor_id": actor_id,
        },
    )
    notification_service.success(f"Payment status updated to {payment_status}")
    return result


def cancel_order(order_id: int, reason: str | None = None, actor_id: int | None = None) -> dict:
    """
    Cancel an order without deleting it. Money already received is reversed
    with a credit note; stock is not restocked automatically.
    """
    allowed_from = sorted(s for s, targets in ORDER_TRANSITIONS.items() if "cancelled" in targets)
    result = get_gateway().rpc(
        "cancel_order",
        {"order_id": order_id, "allowed_from": allowed_from, "reason": reason, "actor_id": actor_id},
    )
    suffix = " Credit note created for refund." if result["credit_note"] else ""
    notification_service.success(f"Order cancelled successfully.{suffix}")
    return result


def get_order_details(order_id: int) -> dict | None:
    """Order with its items, invoice aging row and customer metrics; None if missing."""
    gateway = get_gateway()
    orders = gateway.query("orders", {"id": order_id})
    if not orders:
        return None
    order = orders[0]
    items = gateway.query("order_items", {"order_id": order_id}, order_by="id")
    invoices = gateway.query("vw_invoice_aging", {"order_id": order_id})
    metrics = gateway.query("vw_customer_metrics", {"customer_id": order["customer_id"]})
    return {
        "order": order,
        "items": items,
        "invoice": invoices[0] if invoices else None,
        "customer_metrics": metrics[0] if metrics else None,
    }

