"""
Field markers for domain classes.

Markers are attached with ``typing.Annotated`` and read back from the pydantic
``FieldInfo.metadata`` list during registration:

```python
class Order(DomainObject):
    customer: Optional[Customer] = None
    comment: Annotated[Optional[str], Column(size=200)] = None
    password: Annotated[Optional[str], Secret(), Crypt()] = None
    items: Annotated[Set["Item"], Accumulation()] = Field(default_factory=set)
```

Class level options are plain class attributes:

- ``__abstract__ = True``: class is not instantiable, only its subclasses are object classes
- ``__data_horizon__ = True``: objects are loaded only within the configured data horizon
- ``__table_name__ = "..."``: overrides the conventional table name
- ``__removed_in__ = "x.y"``: class is skipped during registration
- ``__unique_constraints__ = [("field_a", "field_b")]``: multi-column unique constraints
- ``__indexes__ = [("field_a", "field_b")]``: multi-column indexes
"""
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Tuple, Type, TypeVar

M = TypeVar("M")


@dataclass(frozen=True)
class Accumulation:
    """
    Marks a ``Set[Child]`` field as a computed reverse collection of children.

    Args:
        ref_field: Name of the child's reference field this accumulation follows, either
            ``"field"`` or ``"ChildClass.field"``. If omitted exactly one reference field
            of the child class must point to the parent class.
    """
    ref_field: Optional[str] = None


@dataclass(frozen=True)
class Column:
    """
    Column options overriding the naming convention and constraints.

    Args:
        name: Column name (or owner table name part for complex fields)
        size: Capacity of text columns
        unique: Column carries a unique constraint
        on_delete_cascade: Foreign key of a reference field deletes the child with its parent
        entry_table: Entry table name of a complex field
    """
    name: Optional[str] = None
    size: Optional[int] = None
    unique: bool = False
    on_delete_cascade: bool = False
    entry_table: Optional[str] = None


@dataclass(frozen=True)
class Secret:
    """Field value never appears in log output and its column gets a ``sec_`` prefix."""


@dataclass(frozen=True)
class Crypt:
    """Field value is encrypted before storage and decrypted after load."""


@dataclass(frozen=True)
class Deprecated:
    """Field may be missing in the database; it is unregistered instead of failing startup."""


@dataclass(frozen=True)
class Created:
    """Schema version a field was introduced in. Ignored at runtime."""
    version: str


@dataclass(frozen=True)
class Changed:
    """Schema versions a field was changed in. Ignored at runtime."""
    versions: Tuple[str, ...]


@dataclass(frozen=True)
class Removed:
    """Schema version a field was removed in. Removed fields are skipped during registration."""
    version: str


def find_marker(metadata: Iterable[Any], marker_type: Type[M]) -> Optional[M]:
    """Return the first marker of the given type in a field's metadata."""
    for item in metadata:
        if isinstance(item, marker_type):
            return item
    return None


@dataclass(frozen=True)
class StoreAsString:
    """
    Stores values of the field's type (or element type) in text columns.

    Registers a string converter for the type when the field is registered, so the
    type is stored as string wherever it is used. Without functions ``str(value)``
    and ``Type(text)`` convert.
    """
    to_string: Optional[Callable[[Any], str]] = None
    from_string: Optional[Callable[[str], Any]] = None
