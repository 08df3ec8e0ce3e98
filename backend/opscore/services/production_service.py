# Overview: Production batch creation with inventory pre-validation, the compensation routine and the batch state machine.

from __future__ import annotations

import logging

from . import inventory_ledger_service, notification_service
from .storage_errors import StorageError
from .storage_gateway import get_gateway
from opscore.validation import (
    ValidationError,
    parse_decimal,
    parse_id,
    parse_optional_datetime,
    parse_positive_quantity,
    require_fields,
)

logger = logging.getLogger(__name__)

"""
Production batch invariants (authoritative)

- A batch, its inputs and the stock decrements are one compound write.
- The compound write is never attempted when pre-validation reports an
  invalid input; the caller gets one error per invalid input.
- Pre-validation is advisory. A concurrent commit can still make the compound
  write fail with a conflict, which is surfaced and not retried.
- Rollback only restores stock. Batch and input rows stay; calling it twice
  for the same batch credits the stock twice.
"""

BATCH_TRANSITIONS = {
    "in_progress": {"quality_check", "completed"},
    "quality_check": {"approved"},
    "approved": set(),
    "completed": set(),
}

ROLLBACK_REFERENCE = "production_batch_rollback"


class InventoryValidationError(ValidationError):
    """Requested batch inputs exceed available stock; ``errors`` has one entry per bad input."""

    def __init__(self, message: str, errors: list[dict]):
        super().__init__(message)
        self.errors = errors


def _normalize_inputs(inputs) -> list[dict]:
    if not isinstance(inputs, list) or not inputs:
        raise ValidationError("A production batch needs at least one input")
    normalized = []
    for index, entry in enumerate(inputs):
        if not isinstance(entry, dict):
            raise ValidationError(f"inputs[{index}] must be an object")
        normalized.append({
            "material_intake_id": parse_id(entry.get("material_intake_id"), f"inputs[{index}].material_intake_id"),
            # Non-positive quantities are reported per input by validation.
            "quantity_used": parse_decimal(
                entry.get("quantity_used"), f"inputs[{index}].quantity_used", allow_negative=True,
            ),
        })
    return normalized


def _format_error(error: dict) -> str:
    text = f"{error['material_intake_id']}: {error['error']}"
    if error.get("available_quantity") is not None:
        text += f" (Available: {error['available_quantity']})"
    return text


def _json_quantity(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _validate_individually(inputs: list[dict]) -> dict:
    errors = []
    for entry in inputs:
        try:
            check = inventory_ledger_service.check_stock(
                entry["material_intake_id"], entry["quantity_used"], notify=False,
            )
        except StorageError as exc:
            errors.append({
                "material_intake_id": entry["material_intake_id"],
                "error": f"Validation failed: {exc.message}",
                "requested_quantity": float(entry["quantity_used"]),
                "available_quantity": None,
            })
            continue
        if not check.is_valid:
            errors.append({
                "material_intake_id": entry["material_intake_id"],
                "error": check.message,
                "requested_quantity": float(entry["quantity_used"]),
                "available_quantity": check.available_quantity,
            })
    return {"is_valid": not errors, "errors": errors}


def validate_production_batch_inputs(inputs: list[dict]) -> dict:
    """
    Check requested input quantities against available stock.

    Uses the validate_production_batch_inventory procedure; when that is
    unreachable each input is checked on its own through the inventory
    ledger. Returns {"is_valid", "errors"} either way.
    """
    inputs = _normalize_inputs(inputs)
    try:
        return get_gateway().rpc(
            "validate_production_batch_inventory",
            {"inventory_decrements": inputs},
            notify=False,
        )
    except StorageError as exc:
        logger.warning(
            "Batch validation procedure unavailable (%s), falling back to individual checks: %s",
            exc.kind.value, exc.details,
        )
        return _validate_individually(inputs)


def create_production_batch(batch_data: dict, actor_id: int | None = None) -> dict:
    """
    Validate inputs, then create the batch, its inputs and the stock decrements
    in one compound write. Returns {"batch", "inputs", "total_input_cost"}.
    """
    if not isinstance(batch_data, dict):
        raise ValidationError("batch data must be an object")
    require_fields(batch_data, "batch_number")
    inputs = _normalize_inputs(batch_data.get("inputs"))

    validation = validate_production_batch_inputs(inputs)
    if not validation["is_valid"]:
        errors = validation["errors"]
        message = "Inventory validation failed: " + ", ".join(_format_error(e) for e in errors)
        notification_service.error(message)
        raise InventoryValidationError(message, errors)

    result = get_gateway().rpc(
        "create_production_batch_atomic",
        {
            "batch_data": {
                "batch_number": str(batch_data["batch_number"]).strip(),
                "production_date": parse_optional_datetime(batch_data.get("production_date"), "production_date"),
                "output_litres": batch_data.get("output_litres") or 0,
                "quality_grade": batch_data.get("quality_grade"),
                "notes": batch_data.get("notes"),
                "created_by_user_id": actor_id,
            },
            "inventory_decrements": inputs,
        },
    )
    batch = result["batch"]
    notification_service.success(
        f"Production batch {batch['batch_number']} created successfully with {len(result['inputs'])} materials"
    )
    return result


def rollback_production_batch(
    batch_id: int,
    original_inputs: list[dict] | None,
    reason: str,
    actor_id: int | None = None,
) -> dict:
    """
    Restore the stock consumed by a committed batch.

    Every input is attempted even when an earlier one fails; exactly one
    warning naming the batch and reason is emitted. When ``original_inputs``
    is None the batch's recorded inputs are used.
    """
    if not reason or not str(reason).strip():
        raise ValidationError("A rollback reason is required")
    if original_inputs is None:
        original_inputs = get_gateway().query("batch_inputs", {"batch_id": batch_id}, order_by="id")
    for index, entry in enumerate(original_inputs):
        if not isinstance(entry, dict):
            raise ValidationError(f"inputs[{index}] must be an object")

    logger.warning("Rolling back production batch %s: %s", batch_id, reason)

    restored, failed = [], []
    for entry in original_inputs:
        lot_id = entry.get("material_intake_id")
        quantity = entry.get("quantity_used")
        try:
            inventory_ledger_service.increment_stock(
                lot_id,
                quantity,
                batch_id,
                reference_type=ROLLBACK_REFERENCE,
                reason=f"Rollback: Restoring inventory from production batch {batch_id} ({reason})",
                actor_id=actor_id,
                notify=False,
            )
        except (StorageError, ValidationError) as exc:
            logger.error("Failed to reverse inventory for lot %s on batch %s: %s", lot_id, batch_id, exc)
            failed.append({"material_intake_id": lot_id, "quantity_used": quantity, "error": str(exc)})
            continue
        restored.append({"material_intake_id": lot_id, "quantity_used": quantity})

    record = None
    try:
        record = get_gateway().insert(
            "batch_rollbacks",
            {
                "batch_id": batch_id,
                "reason": reason,
                "original_inputs": [
                    {"material_intake_id": e.get("material_intake_id"), "quantity_used": _json_quantity(e.get("quantity_used"))}
                    for e in original_inputs
                ],
                "restored": [{**r, "quantity_used": _json_quantity(r["quantity_used"])} for r in restored],
                "failed": [{**f, "quantity_used": _json_quantity(f["quantity_used"])} for f in failed],
                "performed_by_user_id": actor_id,
            },
            notify=False,
        )[0]
    except StorageError as exc:
        logger.error("Could not record rollback of batch %s: %s", batch_id, exc.details)

    message = f"Production batch {batch_id} operations rolled back: {reason}"
    if failed:
        message += f" ({len(failed)} of {len(original_inputs)} inventory restorations failed, please check manually)"
    notification_service.warning(message, batch_id=batch_id)

    return {
        "batch_id": batch_id,
        "reason": reason,
        "restored": restored,
        "failed": failed,
        "rollback": record,
    }


def complete_production_batch(batch_id: int, output_litres, quality_grade: str | None = None) -> dict:
    output = parse_positive_quantity(output_litres, "output_litres")
    batch = get_gateway().rpc(
        "complete_production_batch",
        {"batch_id": batch_id, "output_litres": output, "quality_grade": quality_grade},
    )
    notification_service.success(f"Production batch {batch['batch_number']} completed with {float(output):g}L output")
    return batch


def update_batch_status(
    batch_id: int,
    new_status: str,
    *,
    quality_grade: str | None = None,
    output_litres=None,
) -> dict:
    if new_status not in BATCH_TRANSITIONS:
        raise ValidationError(f"Unknown batch status: {new_status}")
    if new_status == "completed":
        if output_litres is None:
            raise ValidationError("output_litres is required to complete a batch")
        return complete_production_batch(batch_id, output_litres, quality_grade)

    allowed_from = sorted(s for s, targets in BATCH_TRANSITIONS.items() if new_status in targets)
    batch = get_gateway().rpc(
        "transition_batch_status",
        {
            "batch_id": batch_id,
            "new_status": new_status,
            "allowed_from": allowed_from,
            "quality_grade": quality_grade,
        },
    )
    notification_service.success(f"Production batch {batch['batch_number']} updated successfully")
    return batch


def get_batch_with_inputs(batch_id: int) -> dict | None:
    gateway = get_gateway()
    batches = gateway.query("production_batches", {"id": batch_id})
    if not batches:
        return None
    inputs = gateway.query("batch_inputs", {"batch_id": batch_id}, order_by="id")
    yield_rows = gateway.query("vw_batch_yield", {"batch_id": batch_id})
    return {
        "batch": batches[0],
        "inputs": inputs,
        "yield": yield_rows[0] if yield_rows else None,
    }


def get_batch_yield_by_date_range(start, end) -> list[dict]:
    return get_gateway().query_by_date_range("vw_batch_yield", "production_date", start, end)
