# Overview: Pytest coverage for the inventory outbox replay and login throttling.

"""
Outbox and login throttle tests.

Verifies:
- Queued inventory writes are replayed, rescheduled or given up on
- Failed logins lock an identity + origin pair once the limit is reached
- Expired counters count as zero and are purged
"""

from datetime import timedelta
from unittest import mock

import pytest

from opscore.models import InventoryTransaction, LoginAttempt, MaterialIntakeRecord, PendingInventoryWrite
from opscore.services import login_throttle_service, outbox_service
from opscore.services.storage_errors import ErrorKind, StorageError
from opscore.time_utils import parse_iso_datetime, utcnow
from opscore.validation import ValidationError


def _queue(lot_id, quantity=10, direction="decrement", reference_id=501):
    return outbox_service.enqueue_inventory_write(
        lot_id=lot_id,
        direction=direction,
        quantity=quantity,
        reference_type="order",
        reference_id=reference_id,
        reason="Order ORD-TEST - Sesame Oil 1L",
        error="validation: earlier failure",
    )


def _row(session, row_id):
    session.expire_all()
    return session.get(PendingInventoryWrite, row_id)


# =============================================================================
# OUTBOX
# =============================================================================


class TestEnqueue:

    def test_queued_row_is_pending_and_due(self, db_session, lot):
        row = _queue(lot.id)
        assert row["status"] == "pending"
        assert row["attempts"] == 0
        assert row["last_error"] == "validation: earlier failure"
        assert parse_iso_datetime(row["next_attempt_at"]) <= utcnow()

    def test_unknown_direction(self, db_session, lot):
        with pytest.raises(ValueError):
            _queue(lot.id, direction="sideways")

    def test_pending_writes_filtered_by_reference(self, db_session, lot):
        _queue(lot.id, reference_id=1)
        _queue(lot.id, reference_id=2)
        pending = outbox_service.get_pending_writes(reference_type="order", reference_id=2)
        assert [p["reference_id"] for p in pending] == [2]
        assert len(outbox_service.get_pending_writes()) == 2


class TestDrain:

    def test_replay_succeeds(self, db_session, lot):
        row = _queue(lot.id, quantity=10)

        summary = outbox_service.drain_outbox()

        assert summary == {"processed": 1, "succeeded": 1, "rescheduled": 0, "failed": 0}
        done = _row(db_session, row["id"])
        assert done.status == "done"
        assert done.attempts == 1
        assert done.completed_at is not None
        assert done.last_error is None
        assert float(db_session.get(MaterialIntakeRecord, lot.id).remaining_quantity) == 90.0
        tx = db_session.query(InventoryTransaction).one()
        assert (tx.reference_type, tx.reference_id) == ("order", 501)

    def test_increment_replay(self, db_session, lot):
        _queue(lot.id, quantity=5, direction="increment")
        outbox_service.drain_outbox()
        db_session.expire_all()
        assert float(db_session.get(MaterialIntakeRecord, lot.id).remaining_quantity) == 105.0

    def test_missing_lot_fails_permanently(self, db_session):
        row = _queue(987654)
        summary = outbox_service.drain_outbox()
        assert summary["failed"] == 1
        failed = _row(db_session, row["id"])
        assert failed.status == "failed"
        assert failed.last_error.startswith("not_found:")

    def test_invalid_quantity_fails_permanently(self, db_session, lot):
        row = _queue(lot.id, quantity=0)
        assert outbox_service.drain_outbox()["failed"] == 1
        assert _row(db_session, row["id"]).last_error == "quantity must be greater than zero"

    def test_transient_failure_is_rescheduled(self, db_session, lot):
        row = _queue(lot.id)
        down = StorageError(ErrorKind.CONNECTION, "down", operation="adjust_stock_lot", retryable=True, details="reset")

        with mock.patch.object(outbox_service, "_replay", side_effect=down):
            summary = outbox_service.drain_outbox()

        assert summary["rescheduled"] == 1
        pending = _row(db_session, row["id"])
        assert pending.status == "pending"
        assert pending.attempts == 1
        assert pending.last_error == "connection: reset"
        assert pending.next_attempt_at > utcnow() + timedelta(seconds=30)

        # Not due yet.
        assert outbox_service.drain_outbox()["processed"] == 0

    def test_short_stock_gives_up_after_max_attempts(self, db_session, lot):
        row = _queue(lot.id, quantity=500)
        summary = outbox_service.drain_outbox(max_attempts=1)
        assert summary["failed"] == 1
        failed = _row(db_session, row["id"])
        assert failed.status == "failed"
        assert failed.last_error.startswith("validation:")
        assert float(db_session.get(MaterialIntakeRecord, lot.id).remaining_quantity) == 100.0

    def test_limit(self, db_session, lot):
        for reference_id in range(3):
            _queue(lot.id, quantity=1, reference_id=reference_id)
        assert outbox_service.drain_outbox(limit=2)["processed"] == 2
        assert len(outbox_service.get_pending_writes()) == 1


# =============================================================================
# LOGIN THROTTLE
# =============================================================================


@pytest.fixture
def three_strikes(app, monkeypatch):
    monkeypatch.setitem(app.config, "LOGIN_MAX_FAILED_ATTEMPTS", 3)
    monkeypatch.setitem(app.config, "LOGIN_LOCKOUT_DURATION_MINUTES", 15)


class TestLoginThrottle:

    def test_locks_after_limit(self, db_session, three_strikes):
        for _ in range(2):
            status = login_throttle_service.record_failed_attempt("cashier@opscore.test", "10.0.0.1")
        assert status["locked"] is False
        assert status["failed_attempts"] == 2
        assert status["max_attempts"] == 3

        status = login_throttle_service.record_failed_attempt("cashier@opscore.test", "10.0.0.1")
        assert status["locked"] is True
        assert 0 < status["seconds_until_unlock"] <= 15 * 60

        locked, seconds = login_throttle_service.is_locked("cashier@opscore.test", "10.0.0.1")
        assert locked is True
        assert seconds > 0

    def test_identity_is_case_insensitive(self, db_session, three_strikes):
        login_throttle_service.record_failed_attempt("Cashier@OpsCore.test ", "10.0.0.1")
        status = login_throttle_service.record_failed_attempt("cashier@opscore.test", "10.0.0.1")
        assert status["failed_attempts"] == 2

    def test_origins_are_counted_separately(self, db_session, three_strikes):
        for _ in range(3):
            login_throttle_service.record_failed_attempt("cashier@opscore.test", "10.0.0.1")
        assert login_throttle_service.is_locked("cashier@opscore.test", "10.0.0.2") == (False, None)
        assert login_throttle_service.get_lockout_status("cashier@opscore.test", "10.0.0.2")["failed_attempts"] == 0

    def test_clear_after_success(self, db_session, three_strikes):
        for _ in range(3):
            login_throttle_service.record_failed_attempt("cashier@opscore.test")
        login_throttle_service.clear_attempts("cashier@opscore.test")

        status = login_throttle_service.get_lockout_status("cashier@opscore.test")
        assert status["locked"] is False
        assert status["failed_attempts"] == 0

    def test_expired_counter_restarts(self, db_session, three_strikes):
        past = utcnow() - timedelta(hours=2)
        db_session.add(LoginAttempt(
            key=login_throttle_service.attempt_key("cashier@opscore.test"),
            identity="cashier@opscore.test",
            failure_count=9,
            first_failed_at=past,
            last_failed_at=past,
            locked_until=past + timedelta(minutes=15),
            expires_at=past + timedelta(minutes=15),
        ))
        db_session.commit()

        assert login_throttle_service.get_lockout_status("cashier@opscore.test")["failed_attempts"] == 0
        assert login_throttle_service.is_locked("cashier@opscore.test") == (False, None)
        status = login_throttle_service.record_failed_attempt("cashier@opscore.test")
        assert status["failed_attempts"] == 1
        assert status["locked"] is False

    def test_purge_removes_only_expired(self, db_session, three_strikes):
        past = utcnow() - timedelta(hours=1)
        for name in ("old-a@opscore.test", "old-b@opscore.test"):
            db_session.add(LoginAttempt(
                key=login_throttle_service.attempt_key(name), identity=name, failure_count=1, expires_at=past,
            ))
        db_session.commit()
        login_throttle_service.record_failed_attempt("fresh@opscore.test")

        assert login_throttle_service.purge_expired_attempts() == 2
        assert db_session.query(LoginAttempt).count() == 1

    def test_blank_identity(self, db_session):
        with pytest.raises(ValidationError):
            login_throttle_service.record_failed_attempt("  ")
