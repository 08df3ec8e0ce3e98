# Overview: Order/invoice compound writes and order state changes.

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ...extensions import db
from ...models import Customer, DocumentSequence, FinancialLedgerEntry, Invoice, Order, OrderItem
from ...models.types import MONEY_PLACES, to_decimal
from ..concurrency import lock_for_update
from ..storage_errors import InvalidTransitionError, ProcedureError, RecordNotFoundError
from .registry import procedure
from opscore.time_utils import utcnow

"""
Order/invoice invariants (authoritative)

- An order and its invoice are created in the same transaction, never apart.
- invoice.total_amount == order.net_amount at creation.
- Every invoice gets exactly one "invoice" row in the financial ledger.
- Orders are never deleted; cancellation is a status.
"""


def next_document_number(*, document_type: str, prefix: str, year: int, pad: int = 4) -> str:
    """
    Allocate the next per-year document number inside the caller's transaction.

    Increments the (document_type, year) row with a single UPDATE; the first
    number of a year inserts the row under a savepoint so a concurrent insert
    falls back to the UPDATE path.
    """
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.year == year,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    def _current() -> int:
        return (
            db.session.query(DocumentSequence.next_number)
            .filter_by(document_type=document_type, year=year)
            .scalar()
        )

    if db.session.execute(stmt).rowcount:
        next_num = _current() - 1
    else:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=document_type, year=year, next_number=2))
            next_num = 1
        except IntegrityError:
            if not db.session.execute(stmt).rowcount:
                raise
            next_num = _current() - 1

    return f"{prefix}-{year}-{next_num:0{pad}d}"


def _money(value, default=None) -> Decimal | None:
    if value is None:
        return default
    return to_decimal(value, MONEY_PLACES)


@procedure("create_order_with_invoice")
def create_order_with_invoice(*, order_data: dict, items: list[dict] | None = None, invoice_data: dict | None = None) -> dict:
    invoice_data = invoice_data or {}

    customer_id = order_data.get("customer_id")
    if not customer_id:
        raise ProcedureError("customer_id is required")
    net_amount = _money(order_data.get("net_amount"))
    if net_amount is None or net_amount < 0:
        raise ProcedureError("net_amount must be a non-negative amount")

    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise RecordNotFoundError(f"Customer {customer_id} not found")

    now = utcnow()
    order = Order(
        order_number=order_data["order_number"],
        customer_id=customer_id,
        order_date=order_data.get("order_date") or now,
        expected_delivery=order_data.get("expected_delivery"),
        status=order_data.get("status") or "draft",
        payment_status=order_data.get("payment_status") or "pending",
        total_amount=_money(order_data.get("total_amount"), net_amount),
        tax_amount=_money(order_data.get("tax_amount"), Decimal("0")),
        discount_amount=_money(order_data.get("discount_amount"), Decimal("0")),
        net_amount=net_amount,
        notes=order_data.get("notes"),
        created_by_user_id=order_data.get("created_by_user_id"),
    )
    db.session.add(order)
    db.session.flush()

    order_items = []
    for item in items or []:
        quantity = to_decimal(item["quantity"])
        unit_price = _money(item.get("unit_price"), Decimal("0"))
        line = OrderItem(
            order_id=order.id,
            batch_id=item.get("batch_id"),
            product_name=item.get("product_name"),
            packaging_type=item.get("packaging_type"),
            quantity=quantity,
            unit_price=unit_price,
            line_total=(quantity * unit_price).quantize(MONEY_PLACES),
        )
        db.session.add(line)
        order_items.append(line)

    terms = (
        invoice_data.get("payment_terms")
        or customer.payment_terms_days
        or current_app.config.get("DEFAULT_PAYMENT_TERMS_DAYS", 30)
    )
    issue_date = invoice_data.get("issue_date") or now
    invoice_number = next_document_number(document_type="invoice", prefix="INV", year=issue_date.year)
    invoice = Invoice(
        order_id=order.id,
        invoice_number=invoice_number,
        issue_date=issue_date,
        due_date=invoice_data.get("due_date") or issue_date + timedelta(days=int(terms)),
        payment_terms_days=int(terms),
        total_amount=order.net_amount,
        paid_amount=Decimal("0"),
        status="draft",
    )
    db.session.add(invoice)
    db.session.flush()

    db.session.add(FinancialLedgerEntry(
        transaction_type="invoice",
        reference_type="invoice",
        reference_id=invoice.id,
        customer_id=customer_id,
        amount=invoice.total_amount,
        description=f"Invoice {invoice_number} for order {order.order_number}",
        created_by_user_id=order.created_by_user_id,
    ))
    db.session.flush()

    return {
        "order": order.to_dict(),
        "invoice": invoice.to_dict(),
        "items": [line.to_dict() for line in order_items],
    }


def _lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise RecordNotFoundError(f"Order {order_id} not found")
    return order


def _invoice_for(order_id: int) -> Invoice | None:
    return (
        lock_for_update(db.session.query(Invoice).filter_by(order_id=order_id))
        .order_by(Invoice.id)
        .first()
    )


@procedure("transition_order_status")
def transition_order_status(*, order_id: int, new_status: str, allowed_from: list[str]) -> dict:
    order = _lock_order(order_id)
    if order.status not in allowed_from:
        raise InvalidTransitionError(f"Order {order.order_number} cannot move from {order.status} to {new_status}")
    order.status = new_status
    db.session.flush()
    return order.to_dict()


@procedure("update_order_payment")
def update_order_payment(*, order_id: int, payment_status: str, paid_amount=None, actor_id: int | None = None) -> dict:
    """
    Set the order's payment status and bring its invoice along.

    A payment ledger row records the difference between the new and previous
    paid amount.
    """
    order = _lock_order(order_id)
    if order.status == "cancelled":
        raise InvalidTransitionError(f"Order {order.order_number} is cancelled")
    invoice = _invoice_for(order.id)

    order.payment_status = payment_status
    if invoice is not None:
        previous_paid = Decimal(invoice.paid_amount or 0)
        if payment_status == "paid":
            new_paid = Decimal(invoice.total_amount)
        elif payment_status == "pending":
            new_paid = Decimal("0")
        else:
            new_paid = _money(paid_amount)
            if new_paid is None or not (0 < new_paid < invoice.total_amount):
                raise ProcedureError("partial payments need a paid_amount between zero and the invoice total")
        invoice.paid_amount = new_paid
        invoice.status = {"paid": "paid", "partial": "partial"}.get(payment_status, invoice.status)
        if new_paid != previous_paid:
            db.session.add(FinancialLedgerEntry(
                transaction_type="payment",
                reference_type="invoice",
                reference_id=invoice.id,
                customer_id=order.customer_id,
                amount=new_paid - previous_paid,
                description=f"Payment on invoice {invoice.invoice_number}",
                created_by_user_id=actor_id,
            ))

    db.session.flush()
    return {"order": order.to_dict(), "invoice": invoice.to_dict() if invoice else None}


@procedure("cancel_order")
def cancel_order(*, order_id: int, allowed_from: list[str], reason: str | None = None, actor_id: int | None = None) -> dict:
    """
    Cancel an order. An unpaid invoice is cancelled with it; money already
    received is reversed with a credit note ledger row instead.
    """
    order = _lock_order(order_id)
    if order.status not in allowed_from:
        raise InvalidTransitionError(f"Order {order.order_number} cannot be cancelled from {order.status}")
    order.status = "cancelled"
    if reason:
        order.notes = f"{order.notes}\nCancelled: {reason}" if order.notes else f"Cancelled: {reason}"

    invoice = _invoice_for(order.id)
    credit_note = None
    if invoice is not None:
        paid = Decimal(invoice.paid_amount or 0)
        if paid > 0:
            credit_note = FinancialLedgerEntry(
                transaction_type="credit_note",
                reference_type="invoice",
                reference_id=invoice.id,
                customer_id=order.customer_id,
                amount=-paid,
                description=f"Credit note for cancelled order {order.order_number}",
                created_by_user_id=actor_id,
            )
            db.session.add(credit_note)
        else:
            invoice.status = "cancelled"

    db.session.flush()
    return {
        "order": order.to_dict(),
        "invoice": invoice.to_dict() if invoice else None,
        "credit_note": credit_note.to_dict() if credit_note else None,
    }
