from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ..errors import InvalidAmount


def ensure_positive_int(value: Any, field: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidAmount(f"{field} must be an integer", field=field)
    if number < 1:
        raise InvalidAmount(f"{field} must be >= 1", field=field)
    return number


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    if isinstance(value, bool):
        raise InvalidAmount(f"{field} must be a number", field=field)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"{field} must be a number", field=field)
    if not amount.is_finite():
        raise InvalidAmount(f"{field} must be a number", field=field)
    return amount


def optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
