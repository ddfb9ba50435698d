from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

EMPTY_MARK = "—"


def _as_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None
    return None


def _half_up(value: float, places: int) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def format_cost(value: Any) -> str:
    amount = _as_decimal(value)
    if amount is None or not amount.is_finite():
        return "$0.00"
    return f"${amount.quantize(Decimal('0.0001'), rounding=ROUND_HALF_UP)}"


def format_decimal(value: Any) -> str:
    amount = _as_decimal(value)
    if amount is None or not amount.is_finite():
        return "0.00"
    return str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_number(value: Any) -> str:
    if not isinstance(value, int) or isinstance(value, bool):
        return "0"
    if value >= 1_000_000:
        return f"{_half_up(value / 1_000_000, 1)}M"
    if value >= 1_000:
        return f"{_half_up(value / 1_000, 1)}K"
    return str(value)


def format_percentage(part: int | float, whole: int | float) -> str:
    if not whole:
        return EMPTY_MARK
    return f"{_half_up(part / whole * 100, 1)}%"


def format_date(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.strftime("%Y-%m-%d")
    return EMPTY_MARK


def format_datetime(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    return EMPTY_MARK


def bar_width(value: int | float, values: Iterable[int | float]) -> int:
    """Width of ``value`` as a whole percentage of the largest value."""
    values = list(values)
    if not values:
        return 0
    peak = max(values)
    if not peak:
        return 0
    return int(_half_up(value / peak * 100, 0))


def token_share(value: int | float, values: Iterable[int | float]) -> int:
    """Share of ``value`` as a whole percentage of the sum of ``values``."""
    values = list(values)
    if not values:
        return 0
    total = sum(values)
    if not total:
        return 0
    return int(_half_up(value / total * 100, 0))
