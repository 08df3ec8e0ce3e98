# Overview: Pytest coverage for the data integrity auditor.

"""
Data integrity auditor tests.

Verifies:
- Each check reports the findings it owns with the right severity
- A failing check does not stop the others
- Every run appends its findings as issues; alerts refresh instead of re-dispatching
- Issues and alerts only change to be resolved or acknowledged
"""

import logging
from datetime import timedelta
from decimal import Decimal
from unittest import mock

import pytest

from opscore.models import (
    AppendOnlyViolation,
    DataIntegrityAlert,
    DataIntegrityIssue,
    FinancialLedgerEntry,
    Invoice,
    Order,
    ProductionBatch,
    SystemNotification,
)
from opscore.services import integrity_service, notification_service, order_service
from opscore.services.storage_errors import ErrorKind, StorageError
from opscore.services.storage_gateway import get_gateway
from opscore.time_utils import utcnow
from opscore.validation import ValidationError


def _types(result):
    return sorted({issue["issue_type"] for issue in result["issues"]})


@pytest.fixture
def orphan_order(db_session, customer):
    order = Order(order_number="ORD-ORPHAN-1", customer_id=customer.id, net_amount=Decimal("50"), total_amount=Decimal("50"))
    db_session.add(order)
    db_session.commit()
    return order


@pytest.fixture
def orphan_invoice(db_session):
    invoice = Invoice(
        order_id=987654,
        invoice_number="INV-ORPHAN-1",
        due_date=utcnow() + timedelta(days=30),
        total_amount=Decimal("75"),
    )
    db_session.add(invoice)
    db_session.commit()
    return invoice


def _alert_toasts(notifications):
    return [n for n in notifications() if n["message"].startswith("Data Integrity Alert:")]


# =============================================================================
# CHECKS
# =============================================================================


class TestChecks:

    def test_consistent_data_has_no_issues(self, db_session, customer, lot):
        order_service.create_order({"customer_id": customer.id, "net_amount": 100,
                                    "items": [{"batch_id": lot.id, "quantity": 4}]})

        result = integrity_service.run_all_checks()

        assert result["success"] is True
        assert result["issues"] == []
        assert result["failed_checks"] == []
        assert result["alerts"] == []
        assert result["check_time"].endswith("Z")

    def test_negative_inventory_is_critical(self, db_session, make_lot, notifications):
        bad = make_lot(lot_number="NEG-1", quantity=-5, quantity_received=10)

        result = integrity_service.run_all_checks()

        negative = [i for i in result["issues"] if i["issue_type"] == "negative_inventory"]
        assert len(negative) == 1
        assert negative[0]["severity"] == "critical"
        assert negative[0]["entity_id"] == str(bad.id)
        assert negative[0]["issue_key"] == f"negative-inventory-{bad.id}"
        assert "has negative quantity: -5.0" in negative[0]["description"]

        # Balance no longer matches what was received.
        assert "inventory_discrepancy" in _types(result)

        [alert] = [a for a in result["alerts"] if a["issue_type"] == "negative_inventory"]
        assert alert["severity"] == "critical"
        assert alert["dispatched"] is True
        assert alert["message"] == "1 inventory item with negative quantities detected"
        assert [n["level"] for n in _alert_toasts(notifications)] == ["error"]

    def test_orphaned_order_and_invoice(self, db_session, orphan_order, orphan_invoice):
        result = integrity_service.run_all_checks()

        by_type = {i["issue_type"]: i for i in result["issues"]}
        assert by_type["orphaned_order"]["severity"] == "high"
        assert by_type["orphaned_order"]["entity_id"] == str(orphan_order.id)
        assert by_type["orphaned_invoice"]["severity"] == "critical"
        assert "non-existent order 987654" in by_type["orphaned_invoice"]["description"]
        assert by_type["invoice_without_ledger"]["severity"] == "medium"

    def test_cancelled_orders_need_no_invoice(self, db_session, customer):
        db_session.add(Order(order_number="ORD-C", customer_id=customer.id, net_amount=1, total_amount=1, status="cancelled"))
        db_session.commit()
        assert "orphaned_order" not in _types(integrity_service.run_all_checks())

    def test_orphaned_ledger_entry(self, db_session):
        entry = FinancialLedgerEntry(transaction_type="invoice", reference_type="invoice", reference_id=987654, amount=10)
        db_session.add(entry)
        db_session.commit()

        result = integrity_service.run_all_checks()
        [issue] = [i for i in result["issues"] if i["issue_type"] == "orphaned_ledger_entry"]
        assert issue["severity"] == "high"
        assert issue["entity_id"] == str(entry.id)

    def test_orphaned_batch_below_threshold_raises_no_alert(self, db_session):
        db_session.add(ProductionBatch(batch_number="PB-EMPTY"))
        db_session.commit()

        result = integrity_service.run_all_checks()
        assert _types(result) == ["orphaned_production_batch"]
        assert result["alerts"] == []

    def test_orphaned_batches_at_threshold_alert(self, db_session, notifications):
        for number in range(3):
            db_session.add(ProductionBatch(batch_number=f"PB-EMPTY-{number}"))
        db_session.commit()

        result = integrity_service.run_all_checks()
        [alert] = result["alerts"]
        assert alert["count"] == 3
        assert alert["message"] == "3 production batches found without inputs"
        assert [n["level"] for n in _alert_toasts(notifications)] == ["info"]

    def test_critically_low_stock(self, db_session, make_lot):
        tiny = make_lot(lot_number="LOW-1", quantity=3)
        below_minimum = make_lot(lot_number="LOW-2", quantity=8, minimum_stock_level=Decimal("10"))
        make_lot(lot_number="OK-1", quantity=8)
        make_lot(lot_number="EMPTY", quantity=0, quantity_received=0)

        result = integrity_service.run_all_checks()
        low = [i for i in result["issues"] if i["issue_type"] == "critically_low_stock"]
        assert [i["entity_id"] for i in low] == [str(tiny.id), str(below_minimum.id)]
        assert all(i["severity"] == "medium" for i in low)


class TestCheckFailures:

    def test_failing_check_does_not_stop_the_rest(self, db_session, make_lot, monkeypatch):
        make_lot(lot_number="NEG-1", quantity=-1, quantity_received=-1)

        def broken():
            raise StorageError(ErrorKind.TIMEOUT, "The request timed out.", operation="query orders", retryable=True)

        checks = (("orphaned_orders", broken),) + integrity_service.CHECKS[1:]
        monkeypatch.setattr(integrity_service, "CHECKS", checks)

        result = integrity_service.run_all_checks()

        assert result["success"] is False
        assert result["failed_checks"] == [{"check": "orphaned_orders", "error": "The request timed out."}]
        assert "negative_inventory" in _types(result)

    def test_discrepancy_failure_keeps_other_inventory_checks(self, db_session, make_lot):
        make_lot(lot_number="NEG-1", quantity=-1, quantity_received=-1)
        gateway = integrity_service.get_gateway()
        real_rpc = gateway.rpc

        def rpc(name, params=None, **kwargs):
            if name == "check_inventory_discrepancies":
                raise StorageError(ErrorKind.SERVICE, "unavailable", operation=name, retryable=True)
            return real_rpc(name, params, **kwargs)

        with mock.patch.object(gateway, "rpc", side_effect=rpc):
            result = integrity_service.run_all_checks()

        assert result["failed_checks"] == []
        assert "negative_inventory" in _types(result)


# =============================================================================
# ISSUE AND ALERT DEDUPLICATION
# =============================================================================


class TestDeduplication:

    def test_second_run_appends_issues_and_refreshes_alert(self, db_session, orphan_order, notifications):
        first = integrity_service.run_all_checks()
        second = integrity_service.run_all_checks()

        rows = db_session.query(DataIntegrityIssue).filter_by(issue_type="orphaned_order").all()
        assert len(rows) == 2
        assert {row.issue_key for row in rows} == {f"orphaned-order-{orphan_order.id}"}
        assert db_session.query(DataIntegrityAlert).count() == 1

        assert first["alerts"][0]["dispatched"] is True
        refreshed = second["alerts"][0]
        assert refreshed["dispatched"] is False
        assert refreshed["occurrences"] == 2
        assert refreshed["id"] == first["alerts"][0]["id"]
        assert len(_alert_toasts(notifications)) == 1

    def test_system_notification_for_admins(self, db_session, orphan_order):
        integrity_service.run_all_checks()
        row = db_session.query(SystemNotification).one()
        assert row.type == "data_integrity_alert"
        assert row.target_roles == ["admin"]
        assert row.details["issueType"] == "orphaned_order"

    def test_changed_issue_set_is_a_new_alert(self, db_session, orphan_order, customer):
        integrity_service.run_all_checks()
        db_session.add(Order(order_number="ORD-ORPHAN-2", customer_id=customer.id, net_amount=1, total_amount=1))
        db_session.commit()

        result = integrity_service.run_all_checks()
        [alert] = result["alerts"]
        assert alert["dispatched"] is True
        assert alert["count"] == 2
        assert alert["message"] == "2 orders found without associated invoices"

    def test_acknowledged_alert_is_raised_again(self, db_session, orphan_order, admin):
        alert = integrity_service.run_all_checks()["alerts"][0]
        acknowledged = integrity_service.acknowledge_alert(alert["id"], actor_id=admin.id)
        assert acknowledged["acknowledged"] is True
        assert acknowledged["acknowledged_by_user_id"] == admin.id
        assert integrity_service.get_active_alerts() == []

        again = integrity_service.run_all_checks()["alerts"][0]
        assert again["dispatched"] is True
        assert again["id"] != alert["id"]

    def test_acknowledge_twice_is_a_conflict(self, db_session, orphan_order):
        alert = integrity_service.run_all_checks()["alerts"][0]
        integrity_service.acknowledge_alert(alert["id"])
        with pytest.raises(StorageError) as exc_info:
            integrity_service.acknowledge_alert(alert["id"])
        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_acknowledge_missing_alert(self, db_session):
        with pytest.raises(StorageError) as exc_info:
            integrity_service.acknowledge_alert(987654)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND


class TestResolution:

    def test_resolve_then_rediscover(self, db_session, orphan_order, admin):
        integrity_service.run_all_checks()
        [issue] = integrity_service.get_unresolved_issues()

        resolved = integrity_service.resolve_issue(issue["id"], "Invoice raised by hand", actor_id=admin.id)
        assert resolved["resolved"] is True
        assert resolved["resolution"] == "Invoice raised by hand"
        assert integrity_service.get_unresolved_issues() == []

        # Still broken, so the next run records it again.
        integrity_service.run_all_checks()
        [reopened] = integrity_service.get_unresolved_issues()
        assert reopened["id"] != issue["id"]
        assert len(integrity_service.get_issue_history()) == 2

    def test_resolve_twice_is_a_conflict(self, db_session, orphan_order):
        integrity_service.run_all_checks()
        [issue] = integrity_service.get_unresolved_issues()
        integrity_service.resolve_issue(issue["id"], "Fixed")
        with pytest.raises(StorageError) as exc_info:
            integrity_service.resolve_issue(issue["id"], "Fixed again")
        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_resolution_text_required(self, db_session):
        with pytest.raises(ValidationError):
            integrity_service.resolve_issue(1, " ")

    def test_issues_are_append_only(self, db_session, orphan_order):
        integrity_service.run_all_checks()
        issue = db_session.query(DataIntegrityIssue).first()

        issue.description = "rewritten"
        with pytest.raises(AppendOnlyViolation):
            db_session.commit()
        db_session.rollback()

        db_session.delete(db_session.query(DataIntegrityIssue).first())
        with pytest.raises(AppendOnlyViolation):
            db_session.commit()
        db_session.rollback()

    def test_rewrite_through_gateway_is_not_retried(self, db_session, orphan_order):
        integrity_service.run_all_checks()
        issue = db_session.query(DataIntegrityIssue).first()

        with pytest.raises(StorageError) as exc_info:
            get_gateway().update("data_integrity_issues", {"description": "rewritten"}, {"id": issue.id})

        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert exc_info.value.retryable is False
        assert exc_info.value.attempts == 1
        db_session.expire_all()
        assert db_session.get(DataIntegrityIssue, issue.id).description != "rewritten"


# =============================================================================
# ALERT CONFIGURATION
# =============================================================================


class TestAlertConfig:

    def test_defaults(self, db_session):
        config = integrity_service.get_alert_config("orphaned_invoice")
        assert config.threshold == 1
        assert config.severity == "critical"
        assert integrity_service.get_alert_config("critically_low_stock") is None

    def test_enable_alert_for_unconfigured_type(self, db_session, make_lot, notifications):
        integrity_service.update_alert_config(
            "critically_low_stock", enabled=True, threshold=1, severity="low", channels=["toast"],
        )
        make_lot(lot_number="LOW-1", quantity=2)

        result = integrity_service.run_all_checks()
        [alert] = result["alerts"]
        assert alert["issue_type"] == "critically_low_stock"
        assert alert["channels"] == ["toast"]
        assert "critically_low_stock" in integrity_service.get_alert_configs()

    def test_email_channel_uses_the_logged_stub(self, db_session, orphan_order, notifications, caplog):
        integrity_service.update_alert_config("orphaned_order", channels=["email"])

        with mock.patch.object(
            notification_service, "send_email_notification", wraps=notification_service.send_email_notification,
        ) as email, caplog.at_level(logging.INFO, logger="opscore.services.notification_service"):
            integrity_service.run_all_checks()
            integrity_service.run_all_checks()

        email.assert_called_once_with(
            subject="Data Integrity Alert: orphaned_order",
            body="1 order found without associated invoices",
            recipients_role="admin",
        )
        assert "Email notification not sent" in caplog.text
        assert _alert_toasts(notifications) == []
        assert db_session.query(SystemNotification).count() == 0

    def test_disable(self, db_session, orphan_order):
        integrity_service.update_alert_config("orphaned_order", enabled=False)
        assert integrity_service.run_all_checks()["alerts"] == []

    def test_overrides_from_config(self, db_session, app, monkeypatch):
        monkeypatch.setitem(app.config, "INTEGRITY_ALERT_OVERRIDES", {"orphaned_order": {"threshold": 5}})
        assert integrity_service.get_alert_config("orphaned_order").threshold == 5

    @pytest.mark.parametrize(
        "changes",
        [
            {"threshold": 0},
            {"threshold": True},
            {"severity": "urgent"},
            {"channels": ["sms"]},
            {"colour": "red"},
        ],
    )
    def test_invalid_changes(self, db_session, changes):
        with pytest.raises(ValidationError):
            integrity_service.update_alert_config("orphaned_order", **changes)
