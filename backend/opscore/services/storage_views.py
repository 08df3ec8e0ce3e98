# Overview: Named read models (tables and views) exposed through the storage gateway.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.orm import aliased

from ..models import (
    AuditLogEntry,
    BatchInput,
    BatchRollback,
    Customer,
    DataIntegrityAlert,
    DataIntegrityIssue,
    DocumentSequence,
    FinancialLedgerEntry,
    InventoryTransaction,
    Invoice,
    LoginAttempt,
    MaterialIntakeRecord,
    Order,
    OrderItem,
    PendingInventoryWrite,
    ProductionBatch,
    SystemNotification,
    User,
)
from opscore.time_utils import to_utc_z, utcnow


TABLES: dict[str, type] = {
    model.__tablename__: model
    for model in (
        AuditLogEntry,
        BatchInput,
        BatchRollback,
        Customer,
        DataIntegrityAlert,
        DataIntegrityIssue,
        DocumentSequence,
        FinancialLedgerEntry,
        InventoryTransaction,
        Invoice,
        LoginAttempt,
        MaterialIntakeRecord,
        Order,
        OrderItem,
        PendingInventoryWrite,
        ProductionBatch,
        SystemNotification,
        User,
    )
}


@dataclass(frozen=True)
class ViewDefinition:
    """
    A named read model.

    build() returns a SELECT; derive(row) may add computed columns that are not
    expressible portably in SQL. Filters and ordering on derived columns are
    applied after derivation.
    """
    build: Callable
    derive: Optional[Callable[[dict], dict]] = None


def _days_between(later: datetime, earlier: datetime) -> int:
    return (later - earlier).days


def _build_batch_yield():
    return (
        select(
            ProductionBatch.id.label("batch_id"),
            ProductionBatch.batch_number,
            ProductionBatch.production_date,
            ProductionBatch.status,
            ProductionBatch.total_input_cost,
            ProductionBatch.output_litres,
            ProductionBatch.cost_per_litre,
            ProductionBatch.yield_percentage,
            func.count(BatchInput.id).label("input_count"),
            func.coalesce(func.sum(BatchInput.quantity_used), 0).label("total_quantity_used"),
        )
        .select_from(ProductionBatch)
        .outerjoin(BatchInput, BatchInput.batch_id == ProductionBatch.id)
        .group_by(ProductionBatch.id)
    )


def _build_invoice_aging():
    return (
        select(
            Invoice.id.label("invoice_id"),
            Invoice.invoice_number,
            Invoice.issue_date,
            Invoice.due_date,
            Invoice.total_amount,
            Invoice.paid_amount,
            Invoice.status,
            Order.id.label("order_id"),
            Order.order_number,
            Customer.id.label("customer_id"),
            Customer.name.label("customer_name"),
        )
        .select_from(Invoice)
        .join(Order, Order.id == Invoice.order_id)
        .join(Customer, Customer.id == Order.customer_id)
        .where(Invoice.status != "cancelled")
    )


def aging_bucket(days_overdue: int) -> str:
    if days_overdue <= 0:
        return "current"
    if days_overdue <= 30:
        return "0-30"
    if days_overdue <= 60:
        return "31-60"
    if days_overdue <= 90:
        return "61-90"
    return "90+"


def _derive_invoice_aging(row: dict) -> dict:
    total = row["total_amount"] or Decimal("0")
    paid = row["paid_amount"] or Decimal("0")
    row["outstanding_amount"] = total - paid
    overdue = _days_between(utcnow(), row["due_date"]) if row["due_date"] else 0
    row["days_overdue"] = max(0, overdue)
    row["aging_bucket"] = aging_bucket(overdue)
    return row


def _build_customer_metrics():
    live_orders = and_(Order.customer_id == Customer.id, Order.status != "cancelled")
    return (
        select(
            Customer.id.label("customer_id"),
            Customer.name.label("customer_name"),
            Customer.tier,
            Customer.channel,
            Customer.city,
            func.count(Order.id).label("total_orders"),
            func.coalesce(func.sum(Order.net_amount), 0).label("total_revenue"),
            func.min(Order.order_date).label("first_order_date"),
            func.max(Order.order_date).label("last_order_date"),
        )
        .select_from(Customer)
        .outerjoin(Order, live_orders)
        .group_by(Customer.id)
    )


def _derive_customer_metrics(row: dict) -> dict:
    orders = row["total_orders"] or 0
    revenue = Decimal(row["total_revenue"] or 0)
    first, last = row["first_order_date"], row["last_order_date"]

    row["ltv"] = revenue
    row["aov"] = (revenue / orders) if orders else Decimal("0")

    avg_gap = None
    predicted = None
    if orders > 1 and first and last:
        avg_gap = _days_between(last, first) / (orders - 1)
        predicted = last + (last - first) / (orders - 1)
    row["avg_days_between_orders"] = avg_gap
    row["predicted_reorder_date"] = predicted

    if last is None:
        row["activity_status"] = "inactive"
    else:
        idle = _days_between(utcnow(), last)
        row["activity_status"] = "active" if idle < 30 else "at_risk" if idle < 90 else "inactive"
    return row


def _build_audit_logs():
    subject = aliased(User)
    actor = aliased(User)
    return (
        select(
            AuditLogEntry.id,
            AuditLogEntry.user_id,
            subject.name.label("user_name"),
            subject.email.label("user_email"),
            AuditLogEntry.action,
            AuditLogEntry.old_values,
            AuditLogEntry.new_values,
            AuditLogEntry.performed_by,
            actor.name.label("performed_by_name"),
            AuditLogEntry.details.label("metadata"),
            AuditLogEntry.ip_address,
            AuditLogEntry.user_agent,
            AuditLogEntry.timestamp,
        )
        .select_from(AuditLogEntry)
        .outerjoin(subject, subject.id == AuditLogEntry.user_id)
        .outerjoin(actor, actor.id == AuditLogEntry.performed_by)
    )


VIEWS: dict[str, ViewDefinition] = {
    "vw_batch_yield": ViewDefinition(_build_batch_yield),
    "vw_invoice_aging": ViewDefinition(_build_invoice_aging, _derive_invoice_aging),
    "vw_customer_metrics": ViewDefinition(_build_customer_metrics, _derive_customer_metrics),
    "vw_audit_logs": ViewDefinition(_build_audit_logs),
}


def serialize_value(value):
    """Plain-data form of a column value (what callers of the gateway receive)."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return to_utc_z(value)
    return value


def is_known(name: str) -> bool:
    return name in TABLES or name in VIEWS
