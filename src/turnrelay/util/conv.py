from __future__ import annotations

import math
from typing import Any

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def coerce_bool(value: Any, *, default: bool = False) -> bool:
    """Read a settings.yaml or wire value as a boolean.

    Strings such as "no" or "0" read as False; anything unrecognised gives
    `default`.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and not (isinstance(value, float) and math.isnan(value)):
        return value != 0
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE:
            return True
        if word in _FALSE:
            return False
        if word.lstrip("-").isdigit():
            return int(word) != 0
    return bool(default)


def coerce_int(value: Any, default: int, *, min_value: int, max_value: int) -> int:
    if isinstance(value, bool):
        n = int(default)
    else:
        try:
            n = int(value)
        except (TypeError, ValueError):
            n = int(default)
    if n < min_value:
        n = min_value
    if n > max_value:
        n = max_value
    return n


def coerce_float(value: Any, default: float, *, min_value: float, max_value: float) -> float:
    if isinstance(value, bool):
        f = float(default)
    else:
        try:
            f = float(value)
        except (TypeError, ValueError):
            f = float(default)
    if math.isnan(f):
        f = float(default)
    if f < min_value:
        f = min_value
    if f > max_value:
        f = max_value
    return f
