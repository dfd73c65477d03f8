"""
String converters for values stored in text columns.

Types the SQL layer has no column type for are stored as strings:

- types with a converter registered through ``register_string_converter()``
  (lookup follows the class's MRO, so a converter covers subclasses)
- fields marked with ``StoreAsString`` (``str(value)`` and ``Type(text)``)
- pydantic value objects (models which are not domain objects) and second-level
  collections like ``List[List[int]]``, stored as JSON

```python
register_string_converter(Money, lambda m: f"{m.amount} {m.currency}", Money.parse)

class Order(DomainObject):
    total: Optional[Money] = None
    address: Optional[Address] = None              # pydantic model, stored as JSON
    matrix: List[List[int]] = Field(default_factory=list)
```

Value objects are compared by equality for change detection; in-place changes of a
value object stored in a field are not detected, so treat them as immutable.
"""
import inspect
import logging
import threading
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, get_origin

from pydantic import BaseModel, TypeAdapter

logger = logging.getLogger(__name__)

JSON_CONTAINERS = (list, set, frozenset, dict, tuple)


@dataclass(frozen=True)
class StringConverter:
    to_string: Callable[[Any], str]
    from_string: Callable[[str], Any]


_lock = threading.Lock()
_converters: Dict[Any, StringConverter] = {}


def register_string_converter(tp: Any, to_string: Callable[[Any], str], from_string: Callable[[str], Any]) -> None:
    """
    Register the conversion of a type to and from its stored string.

    Args:
        tp: The value type (subclasses use the converter too)
        to_string: Converts a value to the stored string
        from_string: Parses a stored string
    """
    with _lock:
        if tp in _converters:
            logger.warning(f"String converter for {tp} is replaced")
        _converters[tp] = StringConverter(to_string, from_string)
    logger.debug(f"Registered string converter for {tp}")


def unregister_string_converter(tp: Any) -> None:
    with _lock:
        _converters.pop(tp, None)


def get_registered_converter(tp: Any) -> Optional[StringConverter]:
    """Converter registered for the type or its nearest registered base class."""
    converter = _converters.get(tp)
    if converter is None and inspect.isclass(tp):
        for base in tp.__mro__[1:]:
            converter = _converters.get(base)
            if converter is not None:
                break
    return converter


def is_value_object_type(tp: Any) -> bool:
    """Pydantic models; domain classes are classified as references before this is asked."""
    return inspect.isclass(tp) and issubclass(tp, BaseModel)


def is_nested_collection_type(tp: Any) -> bool:
    return get_origin(tp) in JSON_CONTAINERS


@lru_cache(maxsize=None)
def json_converter(tp: Any) -> StringConverter:
    adapter = TypeAdapter(tp)
    return StringConverter(lambda value: adapter.dump_json(value).decode(), adapter.validate_json)


def converter_for(tp: Any) -> Optional[StringConverter]:
    """
    Converter of a type stored as string.

    Returns:
        The registered converter, a JSON converter for value objects and nested
        collections, or None for types stored in their own column type
    """
    converter = get_registered_converter(tp)
    if converter is not None:
        return converter
    if is_value_object_type(tp) or is_nested_collection_type(tp):
        return json_converter(tp)
    return None
