import math
from typing import Any, Optional


def positive_int(value: Any, *, default: int, maximum: Optional[int] = None) -> int:
    if isinstance(value, bool):
        parsed = default
    else:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            parsed = default
    if parsed <= 0:
        parsed = default
    if maximum is not None:
        return min(parsed, maximum)
    return parsed


def ceil_seconds(value: float) -> int:
    return max(int(math.ceil(value)), 0)
