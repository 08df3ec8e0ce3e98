# Overview: Inventory ledger adapter; moves stock lot balances with reference attribution.

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from ..validation import ValidationError, parse_positive_quantity
from .storage_gateway import get_gateway
from opscore.time_utils import parse_iso_datetime, utcnow

"""
Inventory ledger invariants (authoritative)

- Every balance change is one adjust_stock_lot call: lock, check, update and
  append one InventoryTransaction in the same transaction.
- remaining_quantity never goes below zero through this module; a decrement
  that would do so fails without writing.
- Each change carries a reference (type + id) and a human-readable reason.
"""

INSUFFICIENT_QUANTITY = "insufficient_quantity"
BATCH_NOT_FOUND = "batch_not_found"
EXPIRED_BATCH = "expired_batch"
INVALID_QUANTITY = "invalid_quantity"

MAX_SUGGESTED_LOTS = 3


@dataclass
class StockCheck:
    is_valid: bool
    message: Optional[str] = None
    error_type: Optional[str] = None
    available_quantity: Optional[float] = None
    suggested_lots: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "message": self.message,
            "error_type": self.error_type,
            "available_quantity": self.available_quantity,
            "suggested_lots": self.suggested_lots,
        }


def _adjust(lot_id: int, delta: Decimal, *, reference_id, reference_type, reason, actor_id, notify: bool) -> dict:
    return get_gateway().rpc(
        "adjust_stock_lot",
        {
            "lot_id": lot_id,
            "quantity_delta": delta,
            "reference_type": reference_type,
            "reference_id": reference_id,
            "reason": reason,
            "actor_id": actor_id,
        },
        notify=notify,
    )


def decrement_stock(
    lot_id: int,
    quantity,
    reference_id: Optional[int] = None,
    reference_type: str = "order",
    reason: Optional[str] = None,
    actor_id: Optional[int] = None,
    *,
    notify: bool = True,
) -> dict:
    """Take ``quantity`` out of a lot. Returns {"transaction", "lot"}."""
    amount = parse_positive_quantity(quantity)
    return _adjust(
        lot_id,
        -amount,
        reference_id=reference_id,
        reference_type=reference_type,
        reason=reason or "Material consumption",
        actor_id=actor_id,
        notify=notify,
    )


def increment_stock(
    lot_id: int,
    quantity,
    reference_id: Optional[int] = None,
    reference_type: str = "manual",
    reason: Optional[str] = None,
    actor_id: Optional[int] = None,
    *,
    notify: bool = True,
) -> dict:
    """Put ``quantity`` back into a lot. Returns {"transaction", "lot"}."""
    amount = parse_positive_quantity(quantity)
    return _adjust(
        lot_id,
        amount,
        reference_id=reference_id,
        reference_type=reference_type,
        reason=reason or "Stock restored",
        actor_id=actor_id,
        notify=notify,
    )


def _is_expired(lot: dict) -> bool:
    expiry = parse_iso_datetime(lot.get("expiry_date"))
    return expiry is not None and expiry < utcnow()


def get_available_lots(material_name: str, *, notify: bool = True) -> list[dict]:
    """Non-empty, unexpired lots of a material, oldest intake first (FIFO)."""
    lots = get_gateway().query(
        "material_intake_records",
        {"material_name": material_name, "remaining_quantity__gt": 0},
        order_by=["intake_date", "id"],
        notify=notify,
    )
    return [lot for lot in lots if not _is_expired(lot)]


def check_stock(lot_id, quantity, *, notify: bool = True) -> StockCheck:
    """
    Validate that ``quantity`` can be drawn from a lot.

    When the lot is short, up to three other lots of the same material that
    could cover the request are suggested.
    """
    if not lot_id:
        return StockCheck(False, "A stock lot must be selected", BATCH_NOT_FOUND)
    try:
        requested = parse_positive_quantity(quantity)
    except ValidationError as exc:
        return StockCheck(False, str(exc), INVALID_QUANTITY)

    rows = get_gateway().query("material_intake_records", {"id": lot_id}, notify=notify)
    if not rows:
        return StockCheck(False, f"Stock lot {lot_id} not found", BATCH_NOT_FOUND)
    lot = rows[0]
    available = lot["remaining_quantity"]

    if _is_expired(lot):
        return StockCheck(False, f"Stock lot {lot_id} expired on {lot['expiry_date']}", EXPIRED_BATCH, available)

    if Decimal(str(available)) < requested:
        alternatives = [
            {
                "id": other["id"],
                "lot_number": other["lot_number"],
                "remaining_quantity": other["remaining_quantity"],
            }
            for other in get_available_lots(lot["material_name"], notify=notify)
            if other["id"] != lot["id"] and Decimal(str(other["remaining_quantity"])) >= requested
        ][:MAX_SUGGESTED_LOTS]
        return StockCheck(
            False,
            f"Insufficient quantity in lot {lot_id}: available {available}, requested {float(requested)}",
            INSUFFICIENT_QUANTITY,
            available,
            alternatives,
        )

    return StockCheck(True, available_quantity=available)


def allocate_fifo(material_name: str, quantity) -> list[dict]:
    """
    Split ``quantity`` across the oldest available lots.

    Raises ValidationError when total stock cannot cover the request; nothing
    is written.
    """
    needed = parse_positive_quantity(quantity)
    allocations = []
    for lot in get_available_lots(material_name):
        if needed <= 0:
            break
        take = min(needed, Decimal(str(lot["remaining_quantity"])))
        allocations.append({"material_intake_id": lot["id"], "quantity_used": float(take)})
        needed -= take
    if needed > 0:
        raise ValidationError(f"Insufficient stock of {material_name}: short by {float(needed)}")
    return allocations


def get_transaction_history(lot_id: int, *, limit: int = 100) -> list[dict]:
    return get_gateway().query(
        "inventory_transactions",
        {"material_intake_id": lot_id},
        order_by=["-occurred_at", "-id"],
        limit=limit,
    )
