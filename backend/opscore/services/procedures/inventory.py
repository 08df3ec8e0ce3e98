# Overview: Stock lot procedures; every balance change appends an InventoryTransaction.

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from sqlalchemy import func

from ...extensions import db
from ...models import InventoryTransaction, MaterialIntakeRecord
from ...models.types import to_decimal
from ..concurrency import lock_for_update
from ..storage_errors import InsufficientStockError, ProcedureError, RecordNotFoundError
from .registry import procedure

DISCREPANCY_TOLERANCE = Decimal("0.001")


def lock_lot(lot_id: int) -> MaterialIntakeRecord:
    lot = lock_for_update(
        db.session.query(MaterialIntakeRecord).filter_by(id=lot_id)
    ).first()
    if lot is None:
        raise RecordNotFoundError(f"Stock lot {lot_id} not found")
    return lot


def lock_lots(lot_ids: Iterable[int]) -> dict[int, MaterialIntakeRecord]:
    # Lock in id order so concurrent callers cannot deadlock on each other.
    return {lot_id: lock_lot(lot_id) for lot_id in sorted(set(lot_ids))}


def apply_stock_change(
    lot: MaterialIntakeRecord,
    delta: Decimal,
    *,
    reference_type: str | None,
    reference_id: int | None,
    reason: str | None,
    actor_id: int | None,
) -> InventoryTransaction:
    """Move a locked lot's balance by ``delta`` and record the movement."""
    previous = Decimal(lot.remaining_quantity)
    new_quantity = previous + delta
    if new_quantity < 0:
        raise InsufficientStockError(lot.id, previous, -delta)

    lot.remaining_quantity = new_quantity
    tx = InventoryTransaction(
        material_intake_id=lot.id,
        transaction_type="decrement" if delta < 0 else "increment",
        quantity_changed=delta,
        previous_quantity=previous,
        new_quantity=new_quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        reason=reason,
        actor_user_id=actor_id,
    )
    db.session.add(tx)
    return tx


@procedure("adjust_stock_lot")
def adjust_stock_lot(
    *,
    lot_id: int,
    quantity_delta,
    reference_type: str | None = None,
    reference_id: int | None = None,
    reason: str | None = None,
    actor_id: int | None = None,
) -> dict:
    delta = to_decimal(quantity_delta)
    if delta is None or delta == 0:
        raise ProcedureError("quantity_delta must be non-zero")

    lot = lock_lot(lot_id)
    tx = apply_stock_change(
        lot,
        delta,
        reference_type=reference_type,
        reference_id=reference_id,
        reason=reason,
        actor_id=actor_id,
    )
    db.session.flush()
    return {"transaction": tx.to_dict(), "lot": lot.to_dict()}


@procedure("check_inventory_discrepancies", read_only=True)
def check_inventory_discrepancies() -> list[dict]:
    """
    Lots whose recorded balance differs from quantity_received plus the sum of
    their recorded movements.
    """
    movements = dict(
        db.session.query(
            InventoryTransaction.material_intake_id,
            func.coalesce(func.sum(InventoryTransaction.quantity_changed), 0),
        )
        .group_by(InventoryTransaction.material_intake_id)
        .all()
    )

    findings = []
    lots = db.session.query(MaterialIntakeRecord).order_by(MaterialIntakeRecord.id).all()
    for lot in lots:
        calculated = to_decimal(lot.quantity_received) + to_decimal(movements.get(lot.id, 0))
        recorded = to_decimal(lot.remaining_quantity)
        if abs(calculated - recorded) > DISCREPANCY_TOLERANCE:
            findings.append({
                "material_intake_id": lot.id,
                "material_name": lot.material_name,
                "lot_number": lot.lot_number,
                "recorded_quantity": float(recorded),
                "calculated_quantity": float(calculated),
            })
    return findings
