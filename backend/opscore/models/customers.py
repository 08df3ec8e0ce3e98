from __future__ import annotations

from ..extensions import db
from opscore.time_utils import to_utc_z, utcnow


class Customer(db.Model):
    """
    Buyer master data.

    payment_terms_days feeds invoice due dates when an order does not override it.
    """
    __tablename__ = "customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    tier = db.Column(db.String(32), nullable=True)       # premium, wholesale, standard
    channel = db.Column(db.String(32), nullable=True)    # direct, distributor, online
    city = db.Column(db.String(128), nullable=True)
    payment_terms_days = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "tier": self.tier,
            "channel": self.channel,
            "city": self.city,
            "payment_terms_days": self.payment_terms_days,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
