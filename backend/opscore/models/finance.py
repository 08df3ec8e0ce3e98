from __future__ import annotations

from ..extensions import db
from .types import as_float, money_column
from opscore.time_utils import to_utc_z, utcnow


class Invoice(db.Model):
    """
    Invoice for exactly one order.

    order_id is deliberately not a foreign key: a dangling reference is an
    integrity finding (orphaned_invoice), not something the schema rejects.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.Index("ix_invoices_due_status", "due_date", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=False, index=True)
    invoice_number = db.Column(db.String(32), nullable=False, unique=True)
    issue_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    due_date = db.Column(db.DateTime(timezone=True), nullable=False)
    payment_terms_days = db.Column(db.Integer, nullable=False, default=30)

    total_amount = money_column(nullable=False)
    paid_amount = money_column(nullable=False, default=0)

    # draft, sent, partial, paid, overdue, cancelled
    status = db.Column(db.String(16), nullable=False, default="draft")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "invoice_number": self.invoice_number,
            "issue_date": to_utc_z(self.issue_date),
            "due_date": to_utc_z(self.due_date),
            "payment_terms_days": self.payment_terms_days,
            "total_amount": as_float(self.total_amount),
            "paid_amount": as_float(self.paid_amount),
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class FinancialLedgerEntry(db.Model):
    """
    Append-only money movement.

    reference_type/reference_id point at the source document (invoice,
    production_batch, credit_note). Rows referencing a missing invoice are
    reported as orphaned ledger entries.
    """
    __tablename__ = "financial_ledger"
    __table_args__ = (
        db.Index("ix_financial_ledger_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_type = db.Column(db.String(32), nullable=False)   # invoice, payment, production_cost, credit_note
    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.Integer, nullable=False)
    customer_id = db.Column(db.Integer, nullable=True, index=True)
    amount = money_column(nullable=False)
    description = db.Column(db.Text, nullable=True)
    transaction_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_type": self.transaction_type,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "customer_id": self.customer_id,
            "amount": as_float(self.amount),
            "description": self.description,
            "transaction_date": to_utc_z(self.transaction_date),
            "created_by_user_id": self.created_by_user_id,
        }


class DocumentSequence(db.Model):
    """Per-year counter for human-readable document numbers (INV-2026-0001)."""
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", "year", name="uq_document_sequences_type_year"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
