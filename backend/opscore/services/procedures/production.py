# Overview: Production batch compound writes; batch, inputs and stock decrements commit together.

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal

from ...extensions import db
from ...models import BatchInput, FinancialLedgerEntry, MaterialIntakeRecord, ProductionBatch
from ...models.types import MONEY_PLACES, to_decimal
from ..concurrency import lock_for_update
from ..storage_errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    ProcedureError,
    RecordNotFoundError,
)
from .inventory import apply_stock_change, lock_lots
from .registry import procedure
from opscore.time_utils import utcnow


def _normalize_lines(inventory_decrements: list[dict]) -> list[tuple[int, Decimal]]:
    lines = []
    for entry in inventory_decrements or []:
        lot_id = entry.get("material_intake_id")
        quantity = to_decimal(entry.get("quantity_used"))
        if not lot_id:
            raise ProcedureError("material_intake_id is required for every input")
        if quantity is None or quantity <= 0:
            raise ProcedureError(f"quantity_used for lot {lot_id} must be positive")
        lines.append((int(lot_id), quantity))
    return lines


def _yield_percentage(output: Decimal, consumed: Decimal) -> Decimal:
    if output <= 0 or consumed <= 0:
        return Decimal("0")
    return (output / consumed * 100).quantize(MONEY_PLACES)


def _cost_per_litre(total_cost: Decimal, output: Decimal) -> Decimal:
    if output <= 0:
        return Decimal("0")
    return (total_cost / output).quantize(MONEY_PLACES)


@procedure("validate_production_batch_inventory", read_only=True)
def validate_production_batch_inventory(*, inventory_decrements: list[dict]) -> dict:
    """
    Check requested quantities against current balances without writing.

    Lines on the same lot are checked cumulatively, so the second line is
    invalid when the lot cannot cover both.
    """
    errors = []
    claimed: dict[int, Decimal] = defaultdict(Decimal)
    for entry in inventory_decrements or []:
        lot_id = entry.get("material_intake_id")
        requested = to_decimal(entry.get("quantity_used")) or Decimal("0")
        lot = db.session.get(MaterialIntakeRecord, lot_id) if lot_id else None
        if lot is None:
            errors.append({
                "material_intake_id": lot_id,
                "error": "Material intake record not found",
                "requested_quantity": float(requested),
                "available_quantity": 0.0,
            })
            continue

        available = Decimal(lot.remaining_quantity) - claimed[lot.id]
        if requested <= 0 or requested > available:
            errors.append({
                "material_intake_id": lot.id,
                "error": "Insufficient inventory" if requested > 0 else "Quantity must be positive",
                "requested_quantity": float(requested),
                "available_quantity": float(max(available, Decimal("0"))),
            })
            continue
        claimed[lot.id] += requested

    return {"is_valid": not errors, "errors": errors}


@procedure("create_production_batch_atomic")
def create_production_batch_atomic(*, batch_data: dict, inventory_decrements: list[dict]) -> dict:
    lines = _normalize_lines(inventory_decrements)
    if not lines:
        raise ProcedureError("A production batch needs at least one input")
    if not batch_data.get("batch_number"):
        raise ProcedureError("batch_number is required")

    requested: dict[int, Decimal] = defaultdict(Decimal)
    for lot_id, quantity in lines:
        requested[lot_id] += quantity

    lots = lock_lots(requested)
    for lot_id, quantity in requested.items():
        remaining = Decimal(lots[lot_id].remaining_quantity)
        if remaining < quantity:
            raise ConcurrentModificationError(
                f"Concurrent modification detected: lot {lot_id} has {remaining} remaining, requested {quantity}"
            )

    total_cost = sum(
        (Decimal(lots[lot_id].cost_per_unit) * quantity for lot_id, quantity in lines),
        Decimal("0"),
    ).quantize(MONEY_PLACES)
    consumed = sum((quantity for _, quantity in lines), Decimal("0"))
    output = to_decimal(batch_data.get("output_litres")) or Decimal("0")
    actor_id = batch_data.get("created_by_user_id")

    batch = ProductionBatch(
        batch_number=batch_data["batch_number"],
        production_date=batch_data.get("production_date") or utcnow(),
        status="in_progress",
        total_input_cost=total_cost,
        output_litres=output,
        cost_per_litre=_cost_per_litre(total_cost, output),
        yield_percentage=_yield_percentage(output, consumed),
        quality_grade=batch_data.get("quality_grade"),
        notes=batch_data.get("notes"),
        created_by_user_id=actor_id,
    )
    db.session.add(batch)
    db.session.flush()

    inputs = []
    for lot_id, quantity in lines:
        lot = lots[lot_id]
        unit_cost = Decimal(lot.cost_per_unit)
        batch_input = BatchInput(
            batch_id=batch.id,
            material_intake_id=lot_id,
            quantity_used=quantity,
            cost_per_unit=unit_cost,
            total_cost=(unit_cost * quantity).quantize(MONEY_PLACES),
        )
        db.session.add(batch_input)
        inputs.append(batch_input)
        apply_stock_change(
            lot,
            -quantity,
            reference_type="production_batch",
            reference_id=batch.id,
            reason=f"Consumed by production batch {batch.batch_number}",
            actor_id=actor_id,
        )

    db.session.add(FinancialLedgerEntry(
        transaction_type="production_cost",
        reference_type="production_batch",
        reference_id=batch.id,
        amount=total_cost,
        description=f"Material cost for production batch {batch.batch_number}",
        created_by_user_id=actor_id,
    ))
    db.session.flush()

    return {
        "batch": batch.to_dict(),
        "inputs": [batch_input.to_dict() for batch_input in inputs],
        "total_input_cost": float(total_cost),
    }


def _lock_batch(batch_id: int) -> ProductionBatch:
    batch = lock_for_update(db.session.query(ProductionBatch).filter_by(id=batch_id)).first()
    if batch is None:
        raise RecordNotFoundError(f"Production batch {batch_id} not found")
    return batch


@procedure("transition_batch_status")
def transition_batch_status(*, batch_id: int, new_status: str, allowed_from: list[str], quality_grade: str | None = None) -> dict:
    batch = _lock_batch(batch_id)
    if batch.status not in allowed_from:
        raise InvalidTransitionError(f"Batch {batch.batch_number} cannot move from {batch.status} to {new_status}")
    batch.status = new_status
    if quality_grade:
        batch.quality_grade = quality_grade
    db.session.flush()
    return batch.to_dict()


@procedure("complete_production_batch")
def complete_production_batch(*, batch_id: int, output_litres, quality_grade: str | None = None) -> dict:
    """Record the output of an in-progress batch and derive its unit cost and yield."""
    output = to_decimal(output_litres)
    if output is None or output <= 0:
        raise ProcedureError("output_litres must be positive")

    batch = _lock_batch(batch_id)
    if batch.status != "in_progress":
        raise InvalidTransitionError(f"Batch {batch.batch_number} is {batch.status}, not in_progress")

    consumed = sum((Decimal(i.quantity_used) for i in batch.inputs), Decimal("0"))
    batch.output_litres = output
    batch.cost_per_litre = _cost_per_litre(Decimal(batch.total_input_cost), output)
    batch.yield_percentage = _yield_percentage(output, consumed)
    batch.status = "completed"
    if quality_grade:
        batch.quality_grade = quality_grade
    db.session.flush()
    return batch.to_dict()
