from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from ..extensions import db

Number = Union[int, float, str, Decimal]

MONEY_PLACES = Decimal("0.01")
QUANTITY_PLACES = Decimal("0.001")


def money_column(**kwargs):
    """Money is stored with 2 decimal places."""
    return db.Column(db.Numeric(14, 2), **kwargs)


def quantity_column(**kwargs):
    """Stock quantities are stored with 3 decimal places (litres, kg)."""
    return db.Column(db.Numeric(14, 3), **kwargs)


def to_decimal(value: Optional[Number], places: Decimal = QUANTITY_PLACES) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(places, rounding=ROUND_HALF_UP)


def as_float(value: Optional[Number]) -> Optional[float]:
    if value is None:
        return None
    return float(value)
