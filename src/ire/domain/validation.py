from __future__ import annotations

from typing import Optional

from .errors import ValidationError


def to_number(value, field: str, default: float = 0.0, min_value: Optional[float] = 0.0) -> float:
    """Blank or missing values fall back to ``default``; anything else must be numeric."""
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number.")
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number.")
    if v != v:
        raise ValidationError(f"{field} must be a number.")
    if min_value is not None and v < min_value:
        raise ValidationError(f"{field} must be >= {min_value:g}.")
    return v


def to_id(value, field: str) -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer id.")
