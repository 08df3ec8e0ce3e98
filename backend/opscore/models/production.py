from __future__ import annotations

from ..extensions import db
from .types import as_float, money_column, quantity_column
from opscore.time_utils import to_utc_z, utcnow


class MaterialIntakeRecord(db.Model):
    """
    Stock lot: one intake of material with its own remaining balance.

    INVARIANT: remaining_quantity >= 0. Every change goes through the inventory
    ledger and appends an InventoryTransaction, so
    quantity_received + sum(quantity_changed) == remaining_quantity.

    version_id gives optimistic locking; a concurrent writer fails with
    StaleDataError instead of silently overwriting the balance.
    """
    __tablename__ = "material_intake_records"
    __table_args__ = (
        db.Index("ix_material_intake_material_date", "material_name", "intake_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    material_name = db.Column(db.String(255), nullable=False)
    supplier_name = db.Column(db.String(255), nullable=True)
    lot_number = db.Column(db.String(64), nullable=True)

    quantity_received = quantity_column(nullable=False)
    remaining_quantity = quantity_column(nullable=False)
    unit = db.Column(db.String(16), nullable=False, default="kg")
    cost_per_unit = money_column(nullable=False, default=0)
    minimum_stock_level = quantity_column(nullable=True)

    intake_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<MaterialIntakeRecord id={self.id} material={self.material_name!r} remaining={self.remaining_quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "material_name": self.material_name,
            "supplier_name": self.supplier_name,
            "lot_number": self.lot_number,
            "quantity_received": as_float(self.quantity_received),
            "remaining_quantity": as_float(self.remaining_quantity),
            "unit": self.unit,
            "cost_per_unit": as_float(self.cost_per_unit),
            "minimum_stock_level": as_float(self.minimum_stock_level),
            "intake_date": to_utc_z(self.intake_date),
            "expiry_date": to_utc_z(self.expiry_date),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductionBatch(db.Model):
    """
    Production run consuming one or more stock lots.

    Created together with its BatchInput rows by create_production_batch_atomic.
    Status machine: in_progress -> quality_check -> approved, or in_progress -> completed.
    Rollback restores inventory but never deletes the batch.
    """
    __tablename__ = "production_batches"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    batch_number = db.Column(db.String(64), nullable=False, unique=True)
    production_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    status = db.Column(db.String(32), nullable=False, default="in_progress")

    total_input_cost = money_column(nullable=False, default=0)
    output_litres = quantity_column(nullable=False, default=0)
    cost_per_litre = money_column(nullable=False, default=0)
    yield_percentage = db.Column(db.Numeric(7, 2), nullable=False, default=0)
    quality_grade = db.Column(db.String(16), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    inputs = db.relationship("BatchInput", backref="batch", lazy=True, order_by="BatchInput.id")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_number": self.batch_number,
            "production_date": to_utc_z(self.production_date),
            "status": self.status,
            "total_input_cost": as_float(self.total_input_cost),
            "output_litres": as_float(self.output_litres),
            "cost_per_litre": as_float(self.cost_per_litre),
            "yield_percentage": as_float(self.yield_percentage),
            "quality_grade": self.quality_grade,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class BatchInput(db.Model):
    """Quantity of one stock lot consumed by a batch, with its cost attribution."""
    __tablename__ = "batch_inputs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("production_batches.id"), nullable=False, index=True)
    material_intake_id = db.Column(db.Integer, db.ForeignKey("material_intake_records.id"), nullable=False, index=True)
    quantity_used = quantity_column(nullable=False)
    cost_per_unit = money_column(nullable=False, default=0)
    total_cost = money_column(nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "material_intake_id": self.material_intake_id,
            "quantity_used": as_float(self.quantity_used),
            "cost_per_unit": as_float(self.cost_per_unit),
            "total_cost": as_float(self.total_cost),
            "created_at": to_utc_z(self.created_at),
        }


class BatchRollback(db.Model):
    """Record of one compensation run against a committed batch."""
    __tablename__ = "batch_rollbacks"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, nullable=False, index=True)
    reason = db.Column(db.Text, nullable=False)
    original_inputs = db.Column(db.JSON, nullable=False, default=list)
    restored = db.Column(db.JSON, nullable=False, default=list)
    failed = db.Column(db.JSON, nullable=False, default=list)
    performed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "reason": self.reason,
            "original_inputs": self.original_inputs,
            "restored": self.restored,
            "failed": self.failed,
            "performed_by_user_id": self.performed_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
