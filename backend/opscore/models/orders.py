from __future__ import annotations

from ..extensions import db
from .types import as_float, money_column, quantity_column
from opscore.time_utils import to_utc_z, utcnow


class Order(db.Model):
    """
    Customer order.

    INVARIANT: net_amount = total_amount + tax_amount - discount_amount.
    Created only by the create_order_with_invoice procedure together with its
    Invoice. Cancellation is a status; orders are never deleted.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_customer_date", "customer_id", "order_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    order_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expected_delivery = db.Column(db.DateTime(timezone=True), nullable=True)

    # draft, confirmed, in_production, ready, dispatched, delivered, cancelled
    status = db.Column(db.String(32), nullable=False, default="draft", index=True)
    # pending, partial, paid
    payment_status = db.Column(db.String(16), nullable=False, default="pending")

    total_amount = money_column(nullable=False, default=0)
    tax_amount = money_column(nullable=False, default=0)
    discount_amount = money_column(nullable=False, default=0)
    net_amount = money_column(nullable=False)

    notes = db.Column(db.Text, nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship("OrderItem", backref="order", lazy=True, order_by="OrderItem.id")

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "order_date": to_utc_z(self.order_date),
            "expected_delivery": to_utc_z(self.expected_delivery),
            "status": self.status,
            "payment_status": self.payment_status,
            "total_amount": as_float(self.total_amount),
            "tax_amount": as_float(self.tax_amount),
            "discount_amount": as_float(self.discount_amount),
            "net_amount": as_float(self.net_amount),
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderItem(db.Model):
    """
    One order line. batch_id references the stock lot the goods are drawn from;
    each line drives one inventory decrement after the order commits.
    """
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("material_intake_records.id"), nullable=True, index=True)
    product_name = db.Column(db.String(255), nullable=True)
    packaging_type = db.Column(db.String(64), nullable=True)
    quantity = quantity_column(nullable=False)
    unit_price = money_column(nullable=False, default=0)
    line_total = money_column(nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "batch_id": self.batch_id,
            "product_name": self.product_name,
            "packaging_type": self.packaging_type,
            "quantity": as_float(self.quantity),
            "unit_price": as_float(self.unit_price),
            "line_total": as_float(self.line_total),
        }
