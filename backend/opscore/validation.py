from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from opscore.models.types import MONEY_PLACES, QUANTITY_PLACES
from opscore.time_utils import parse_iso_datetime

# Largest accepted monetary amount (9,999,999,999.99)
MAX_AMOUNT = Decimal("9999999999.99")


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., invalid status transition)."""


def require_fields(payload: dict, *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def parse_decimal(value: Any, field: str, *, places: Decimal = QUANTITY_PLACES,
                  allow_zero: bool = True, allow_negative: bool = False) -> Decimal:
    """
    Parse a JSON number or numeric string.

    Booleans are rejected even though they are ints in Python.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    try:
        number = Decimal(repr(value) if isinstance(value, float) else str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not number.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    if number < 0 and not allow_negative:
        raise ValidationError(f"{field} must not be negative")
    if number == 0 and not allow_zero:
        raise ValidationError(f"{field} must be greater than zero")
    if abs(number) > MAX_AMOUNT:
        raise ValidationError(f"{field} is too large")
    return number.quantize(places)


def parse_money(value: Any, field: str, **kwargs) -> Decimal:
    return parse_decimal(value, field, places=MONEY_PLACES, **kwargs)


def parse_positive_quantity(value: Any, field: str = "quantity") -> Decimal:
    return parse_decimal(value, field, allow_zero=False)


def parse_id(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer id")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise ValidationError(f"{field} must be an integer id")
    if parsed < 1:
        raise ValidationError(f"{field} must be a positive id")
    return parsed


def parse_optional_datetime(value: Any, field: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return parse_iso_datetime(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


def reconcile_order_totals(payload: dict) -> dict[str, Decimal]:
    """
    Return total/tax/discount/net that satisfy
    net_amount = total_amount + tax_amount - discount_amount.

    Missing parts are derived from the others; a payload that states all four
    inconsistently is rejected.
    """
    tax = parse_money(payload.get("tax_amount", 0) or 0, "tax_amount")
    discount = parse_money(payload.get("discount_amount", 0) or 0, "discount_amount")
    total_raw = payload.get("total_amount")
    net_raw = payload.get("net_amount")

    if total_raw is None and net_raw is None:
        raise ValidationError("net_amount or total_amount is required")

    if net_raw is None:
        total = parse_money(total_raw, "total_amount")
        net = total + tax - discount
    elif total_raw is None:
        net = parse_money(net_raw, "net_amount")
        total = net - tax + discount
    else:
        total = parse_money(total_raw, "total_amount")
        net = parse_money(net_raw, "net_amount")
        if total + tax - discount != net:
            raise ValidationError(
                "net_amount must equal total_amount + tax_amount - discount_amount"
            )

    if net < 0 or total < 0:
        raise ValidationError("Order amounts must not be negative")
    return {"total_amount": total, "tax_amount": tax, "discount_amount": discount, "net_amount": net}
