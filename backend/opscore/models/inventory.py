from __future__ import annotations

from ..extensions import db
from .types import as_float, quantity_column
from opscore.time_utils import to_utc_z, utcnow


class InventoryTransaction(db.Model):
    """
    Stock movement history for one lot.

    IMMUTABLE: Append-only. quantity_changed is signed (negative for decrements);
    previous/new quantities are the lot balance around the change.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.Index("ix_inventory_transactions_lot_occurred", "material_intake_id", "occurred_at"),
        db.Index("ix_inventory_transactions_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    material_intake_id = db.Column(db.Integer, db.ForeignKey("material_intake_records.id"), nullable=False)
    # decrement, increment, adjustment
    transaction_type = db.Column(db.String(16), nullable=False)
    quantity_changed = quantity_column(nullable=False)
    previous_quantity = quantity_column(nullable=False)
    new_quantity = quantity_column(nullable=False)

    # order, production_batch, production_batch_rollback, manual
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "material_intake_id": self.material_intake_id,
            "transaction_type": self.transaction_type,
            "quantity_changed": as_float(self.quantity_changed),
            "previous_quantity": as_float(self.previous_quantity),
            "new_quantity": as_float(self.new_quantity),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "reason": self.reason,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class PendingInventoryWrite(db.Model):
    """
    Outbox row for a dependent inventory write that failed after its parent
    document committed. drain_outbox() replays it until it succeeds or runs out
    of attempts.
    """
    __tablename__ = "pending_inventory_writes"
    __table_args__ = (
        db.Index("ix_pending_inventory_writes_status_next", "status", "next_attempt_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    material_intake_id = db.Column(db.Integer, nullable=False)
    direction = db.Column(db.String(16), nullable=False)   # decrement, increment
    quantity = quantity_column(nullable=False)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    actor_user_id = db.Column(db.Integer, nullable=True)

    # pending, done, failed
    status = db.Column(db.String(16), nullable=False, default="pending")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "material_intake_id": self.material_intake_id,
            "direction": self.direction,
            "quantity": as_float(self.quantity),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "reason": self.reason,
            "actor_user_id": self.actor_user_id,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "next_attempt_at": to_utc_z(self.next_attempt_at),
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
        }
