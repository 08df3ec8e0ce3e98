# Overview: Pytest coverage for production batches, their compensation routine and state machine.

"""
Production batch tests.

Verifies:
- Batch, inputs and stock decrements commit together
- Invalid inputs stop creation before the compound write is attempted
- Rollback attempts every input and warns exactly once
- Completion derives unit cost and yield from the recorded inputs
"""

from datetime import timedelta
from unittest import mock

import pytest

from opscore.models import (
    BatchInput,
    BatchRollback,
    FinancialLedgerEntry,
    InventoryTransaction,
    MaterialIntakeRecord,
    ProductionBatch,
)
from opscore.services import inventory_ledger_service, production_service
from opscore.services.production_service import InventoryValidationError
from opscore.services.storage_errors import ErrorKind, StorageError
from opscore.services.storage_gateway import get_gateway
from opscore.time_utils import utcnow
from opscore.validation import ValidationError


def _balance(session, lot_id):
    session.expire_all()
    return float(session.get(MaterialIntakeRecord, lot_id).remaining_quantity)


def _batch_payload(*inputs, batch_number="PB-001", **extra):
    payload = {
        "batch_number": batch_number,
        "inputs": [{"material_intake_id": lot_id, "quantity_used": qty} for lot_id, qty in inputs],
    }
    payload.update(extra)
    return payload


@pytest.fixture
def rpc_spy():
    gateway = get_gateway()
    with mock.patch.object(gateway, "rpc", wraps=gateway.rpc) as spy:
        yield spy


@pytest.fixture
def batch(db_session, lot, second_lot, production_user):
    return production_service.create_production_batch(
        _batch_payload((lot.id, 30), (second_lot.id, 10)), actor_id=production_user.id,
    )["batch"]


# =============================================================================
# CREATE
# =============================================================================


class TestCreateBatch:

    def test_creates_batch_inputs_and_decrements(self, db_session, lot, second_lot, production_user, notifications):
        result = production_service.create_production_batch(
            _batch_payload((lot.id, 30), (second_lot.id, 10)), actor_id=production_user.id,
        )

        batch = result["batch"]
        assert batch["status"] == "in_progress"
        assert batch["created_by_user_id"] == production_user.id
        assert result["total_input_cost"] == 80.0
        assert [i["material_intake_id"] for i in result["inputs"]] == [lot.id, second_lot.id]
        assert result["inputs"][0]["total_cost"] == 60.0

        assert _balance(db_session, lot.id) == 70.0
        assert _balance(db_session, second_lot.id) == 30.0

        txs = db_session.query(InventoryTransaction).order_by(InventoryTransaction.id).all()
        assert [(t.reference_type, t.reference_id) for t in txs] == [("production_batch", batch["id"])] * 2

        ledger = db_session.query(FinancialLedgerEntry).one()
        assert ledger.transaction_type == "production_cost"
        assert float(ledger.amount) == 80.0

        assert notifications("success")[-1]["message"] == (
            "Production batch PB-001 created successfully with 2 materials"
        )

    def test_invalid_inputs_never_reach_compound_write(
        self, db_session, lot, second_lot, rpc_spy, notifications,
    ):
        payload = _batch_payload((lot.id, 150), (second_lot.id, 10), (987654, 1))

        with pytest.raises(InventoryValidationError) as exc_info:
            production_service.create_production_batch(payload)

        errors = exc_info.value.errors
        assert [e["material_intake_id"] for e in errors] == [lot.id, 987654]
        assert errors[0]["error"] == "Insufficient inventory"
        assert errors[0]["available_quantity"] == 100.0
        assert errors[1]["error"] == "Material intake record not found"

        called = [call.args[0] for call in rpc_spy.call_args_list]
        assert "create_production_batch_atomic" not in called
        assert db_session.query(ProductionBatch).count() == 0
        assert _balance(db_session, lot.id) == 100.0

        messages = [n["message"] for n in notifications("error")]
        assert len(messages) == 1
        assert messages[0].startswith("Inventory validation failed: ")
        assert f"{lot.id}: Insufficient inventory (Available: 100.0)" in messages[0]

    def test_lines_on_same_lot_are_checked_together(self, db_session, lot):
        with pytest.raises(InventoryValidationError) as exc_info:
            production_service.create_production_batch(_batch_payload((lot.id, 60), (lot.id, 60)))
        assert len(exc_info.value.errors) == 1
        assert exc_info.value.errors[0]["available_quantity"] == 40.0

    def test_non_positive_quantity_reported_per_input(self, db_session, lot):
        with pytest.raises(InventoryValidationError) as exc_info:
            production_service.create_production_batch(_batch_payload((lot.id, 0)))
        assert exc_info.value.errors[0]["error"] == "Quantity must be positive"

    def test_needs_batch_number_and_inputs(self, db_session, lot):
        with pytest.raises(ValidationError, match="batch_number"):
            production_service.create_production_batch({"inputs": [{"material_intake_id": lot.id, "quantity_used": 1}]})
        with pytest.raises(ValidationError, match="at least one input"):
            production_service.create_production_batch({"batch_number": "PB-9", "inputs": []})

    def test_duplicate_batch_number(self, db_session, lot, batch):
        with pytest.raises(StorageError) as exc_info:
            production_service.create_production_batch(_batch_payload((lot.id, 1)))
        assert exc_info.value.kind == ErrorKind.UNIQUE_VIOLATION
        assert _balance(db_session, lot.id) == 70.0

    def test_compound_write_conflict_is_not_retried(self, db_session, lot):
        # Bypasses pre-validation, as a concurrent commit would.
        with pytest.raises(StorageError) as exc_info:
            get_gateway().rpc(
                "create_production_batch_atomic",
                {
                    "batch_data": {"batch_number": "PB-RACE"},
                    "inventory_decrements": [{"material_intake_id": lot.id, "quantity_used": 150}],
                },
                notify=False,
            )
        assert exc_info.value.kind == ErrorKind.CONFLICT
        assert exc_info.value.attempts == 1
        assert db_session.query(ProductionBatch).count() == 0
        assert db_session.query(BatchInput).count() == 0


class TestValidationFallback:

    @pytest.fixture
    def procedure_down(self):
        gateway = get_gateway()
        real_rpc = gateway.rpc

        def rpc(name, params=None, **kwargs):
            if name == "validate_production_batch_inventory":
                raise StorageError(ErrorKind.SERVICE, "unavailable", operation=name, retryable=True)
            return real_rpc(name, params, **kwargs)

        with mock.patch.object(gateway, "rpc", side_effect=rpc):
            yield

    def test_falls_back_to_per_lot_checks(self, db_session, lot, procedure_down):
        result = production_service.validate_production_batch_inputs(
            [{"material_intake_id": lot.id, "quantity_used": 150}],
        )
        assert result["is_valid"] is False
        assert result["errors"][0]["error"].startswith(f"Insufficient quantity in lot {lot.id}")
        assert result["errors"][0]["available_quantity"] == 100.0

    def test_creation_still_works(self, db_session, lot, procedure_down):
        result = production_service.create_production_batch(_batch_payload((lot.id, 25)))
        assert result["batch"]["batch_number"] == "PB-001"
        assert _balance(db_session, lot.id) == 75.0


# =============================================================================
# ROLLBACK
# =============================================================================


class TestRollback:

    def test_restores_recorded_inputs(self, db_session, lot, second_lot, batch, admin, notifications):
        result = production_service.rollback_production_batch(batch["id"], None, "Contaminated tank", actor_id=admin.id)

        assert len(result["restored"]) == 2
        assert result["failed"] == []
        assert _balance(db_session, lot.id) == 100.0
        assert _balance(db_session, second_lot.id) == 40.0

        restores = db_session.query(InventoryTransaction).filter_by(reference_type="production_batch_rollback").all()
        assert len(restores) == 2
        assert all(t.reference_id == batch["id"] for t in restores)

        record = db_session.query(BatchRollback).one()
        assert record.reason == "Contaminated tank"
        assert record.performed_by_user_id == admin.id
        assert result["rollback"]["id"] == record.id

        # The batch itself is kept.
        assert db_session.get(ProductionBatch, batch["id"]) is not None
        assert [n["message"] for n in notifications("warning")] == [
            f"Production batch {batch['id']} operations rolled back: Contaminated tank"
        ]

    def test_attempts_every_input_after_a_failure(self, db_session, lot, second_lot, batch, notifications):
        inputs = [
            {"material_intake_id": lot.id, "quantity_used": 30},
            {"material_intake_id": second_lot.id, "quantity_used": 10},
        ]
        failure = StorageError(ErrorKind.CONNECTION, "Connection problem.", operation="adjust_stock_lot", retryable=True)

        with mock.patch.object(
            inventory_ledger_service, "increment_stock", side_effect=[failure, {"transaction": {}, "lot": {}}],
        ) as increment:
            result = production_service.rollback_production_batch(batch["id"], inputs, "Quality failure")

        assert increment.call_count == 2
        assert [f["material_intake_id"] for f in result["failed"]] == [lot.id]
        assert [r["material_intake_id"] for r in result["restored"]] == [second_lot.id]

        warnings = notifications("warning")
        assert len(warnings) == 1
        assert str(batch["id"]) in warnings[0]["message"]
        assert "Quality failure" in warnings[0]["message"]
        assert "1 of 2 inventory restorations failed" in warnings[0]["message"]
        assert db_session.query(BatchRollback).one().failed[0]["material_intake_id"] == lot.id

    def test_invalid_quantity_counts_as_failure(self, db_session, lot, batch):
        result = production_service.rollback_production_batch(
            batch["id"], [{"material_intake_id": lot.id, "quantity_used": 0}], "Bad entry",
        )
        assert len(result["failed"]) == 1
        assert _balance(db_session, lot.id) == 70.0

    def test_reason_required(self, db_session, batch):
        with pytest.raises(ValidationError):
            production_service.rollback_production_batch(batch["id"], None, "  ")

    def test_inputs_must_be_objects(self, db_session, lot, batch, notifications):
        with pytest.raises(ValidationError, match=r"inputs\[1\] must be an object"):
            production_service.rollback_production_batch(
                batch["id"], [{"material_intake_id": lot.id, "quantity_used": 5}, 5], "Bad entry",
            )
        assert _balance(db_session, lot.id) == 70.0
        assert notifications("warning") == []

    def test_second_rollback_credits_again(self, db_session, lot, batch):
        production_service.rollback_production_batch(batch["id"], None, "First")
        production_service.rollback_production_batch(batch["id"], None, "Second")
        assert _balance(db_session, lot.id) == 130.0
        assert db_session.query(BatchRollback).count() == 2


# =============================================================================
# STATE MACHINE
# =============================================================================


class TestBatchLifecycle:

    def test_complete_derives_cost_and_yield(self, db_session, lot):
        created = production_service.create_production_batch(_batch_payload((lot.id, 50)))
        assert created["total_input_cost"] == 100.0

        batch = production_service.complete_production_batch(created["batch"]["id"], 40, quality_grade="A")

        assert batch["status"] == "completed"
        assert batch["output_litres"] == 40.0
        assert batch["cost_per_litre"] == 2.5
        assert batch["yield_percentage"] == 80.0
        assert batch["quality_grade"] == "A"

    def test_quality_check_then_approved(self, db_session, batch):
        assert production_service.update_batch_status(batch["id"], "quality_check")["status"] == "quality_check"
        approved = production_service.update_batch_status(batch["id"], "approved", quality_grade="B")
        assert approved["status"] == "approved"
        assert approved["quality_grade"] == "B"

    def test_completed_is_terminal(self, db_session, batch):
        production_service.update_batch_status(batch["id"], "completed", output_litres=20)
        with pytest.raises(StorageError) as exc_info:
            production_service.update_batch_status(batch["id"], "quality_check")
        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_cannot_approve_from_in_progress(self, db_session, batch):
        with pytest.raises(StorageError) as exc_info:
            production_service.update_batch_status(batch["id"], "approved")
        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_completion_needs_output(self, db_session, batch):
        with pytest.raises(ValidationError):
            production_service.update_batch_status(batch["id"], "completed")
        with pytest.raises(ValidationError):
            production_service.complete_production_batch(batch["id"], 0)

    def test_unknown_status(self, db_session, batch):
        with pytest.raises(ValidationError):
            production_service.update_batch_status(batch["id"], "shipped")


class TestBatchReads:

    def test_batch_with_inputs(self, db_session, lot, second_lot, batch):
        details = production_service.get_batch_with_inputs(batch["id"])
        assert details["batch"]["batch_number"] == "PB-001"
        assert [i["material_intake_id"] for i in details["inputs"]] == [lot.id, second_lot.id]
        assert details["yield"]["input_count"] == 2
        assert details["yield"]["total_quantity_used"] == 40.0

    def test_missing_batch(self, db_session):
        assert production_service.get_batch_with_inputs(987654) is None

    def test_yield_by_date_range(self, db_session, batch):
        today = utcnow().date()
        rows = production_service.get_batch_yield_by_date_range(today - timedelta(days=1), today)
        assert [r["batch_id"] for r in rows] == [batch["id"]]
        assert production_service.get_batch_yield_by_date_range(today - timedelta(days=9), today - timedelta(days=2)) == []
