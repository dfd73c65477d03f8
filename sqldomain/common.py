"""Small helpers shared by the registry, the object store and the SQL layer."""
import math
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

SECRET_MASK = "********"

_CAMEL_BOUNDARY_1 = re.compile(r"(.)([A-Z][a-z]+)")
_CAMEL_BOUNDARY_2 = re.compile(r"([a-z0-9])([A-Z])")


def to_snake(name: str) -> str:
    """Convert ``CamelCase`` or ``mixedCase`` names to ``snake_case``."""
    name = _CAMEL_BOUNDARY_1.sub(r"\1_\2", name)
    return _CAMEL_BOUNDARY_2.sub(r"\1_\2", name).lower()


def utcnow() -> datetime:
    """Current UTC time as naive datetime, the representation stored in timestamp columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_empty_container(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset, dict)) and len(value) == 0


def logically_equal(a: Any, b: Any) -> bool:
    """
    Tolerant equality used for change detection.

    None equals an empty container, floats are compared with a relative tolerance
    and containers are compared element-wise with the same rules.
    """
    if a is b:
        return True
    if a is None or b is None:
        other = b if a is None else a
        return is_empty_container(other)
    if isinstance(a, float) or isinstance(b, float):
        if isinstance(a, (int, float, Decimal)) and isinstance(b, (int, float, Decimal)):
            return math.isclose(float(a), float(b), rel_tol=1e-9, abs_tol=1e-12)
        return False
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(logically_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(logically_equal(a[k], b[k]) for k in a)
    if isinstance(a, (set, frozenset)) and isinstance(b, (set, frozenset)):
        return set(a) == set(b)
    return a == b


def for_logging(value: Any, secret: bool = False, max_length: int = 128) -> str:
    """Render a field value for log output, masking secret values and shortening long ones."""
    if secret and value is not None:
        return SECRET_MASK
    text = repr(value)
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text
