from __future__ import annotations

import math
from typing import Any, Collection


OUNCES_PER_POUND = 16


def _as_positive_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def _accepted(ounces: float, accepted_oz: Collection[int]) -> bool:
    if not ounces.is_integer():
        return False
    return not accepted_oz or int(ounces) in accepted_oz


def resolve_weight_oz(
    weight_oz: Any,
    weight_lbs: Any,
    *,
    accepted_oz: Collection[int] = (),
    default_oz: int | None = 32,
) -> int | None:
    """Pick the package weight in ounces.

    First match wins: an accepted ounce value, then an accepted pound value
    converted to ounces, then ``default_oz`` (which may be ``None``). An empty
    ``accepted_oz`` accepts any positive whole number of ounces.
    """
    ounces = _as_positive_number(weight_oz)
    if ounces is not None and _accepted(ounces, accepted_oz):
        return int(ounces)

    pounds = _as_positive_number(weight_lbs)
    if pounds is not None:
        converted = pounds * OUNCES_PER_POUND
        if _accepted(converted, accepted_oz):
            return int(converted)

    return default_oz
