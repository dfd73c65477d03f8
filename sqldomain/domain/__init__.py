"""
In-heap domain model: domain objects, the metadata registry and the object store.
"""
from .object import DomainObject
from .field_error import FieldError
from .registry import CollectionKind, DomainField, FieldKind, Registry
from .controller import DomainController

__all__ = ["DomainObject", "FieldError", "CollectionKind", "DomainField", "FieldKind", "Registry", "DomainController"]
