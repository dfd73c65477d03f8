############################################################
# object.py
############################################################

"""
Base class of all persisted domain objects.

A domain object is a pydantic model identified by ``(object domain class, id)``.
Fields are plain pydantic fields and are classified by the registry (see
sqldomain.domain.registry):

1. DATA FIELDS: scalars (str, int, float, bool, Decimal, datetime, date, time, bytes, Enum)
2. REFERENCE FIELDS: another domain object, ``Optional[...]`` if the reference may be null
3. COMPLEX FIELDS: ``List``, ``Set`` or ``Dict`` of scalars, stored in an entry table
4. ACCUMULATION FIELDS: ``Annotated[Set[Child], Accumulation()]``, the children
   referencing this object, maintained by the object store and never stored

Transient state (stored flag, accumulation shadow, field errors) lives in pydantic
private attributes. Equality and hashing are identity based so objects can sit in
sets while their fields change, and ``repr`` never follows references so object
graphs with cycles print safely.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, PrivateAttr

from sqldomain.domain.field_error import FieldError
from sqldomain.errors import DomainError


class DomainObject(BaseModel):
    """Root of all domain classes."""
    id: int = 0
    last_modified: Optional[datetime] = None

    model_config = ConfigDict(arbitrary_types_allowed=True, revalidate_instances="never")

    _controller: Any = PrivateAttr(default=None)
    _is_stored: bool = PrivateAttr(default=False)
    _ref_shadow: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _field_errors: Dict[str, FieldError] = PrivateAttr(default_factory=dict)
    _current_exception: Optional[BaseException] = PrivateAttr(default=None)

    ##############################
    # 1) Identity
    ##############################

    @property
    def universal_id(self) -> str:
        return f"{type(self).__name__}@{self.id}"

    @property
    def is_stored(self) -> bool:
        """True once the object has a row in the database."""
        return self._is_stored

    @property
    def current_exception(self) -> Optional[BaseException]:
        """Exception of the last failed save or delete of this object, if any."""
        return self._current_exception

    def is_registered(self) -> bool:
        return self._controller is not None and self._controller.is_registered(self)

    def __eq__(self, other: object) -> bool:
        return self is other

    def __hash__(self) -> int:
        return object.__hash__(self)

    def __lt__(self, other: "DomainObject") -> bool:
        return (self.id, type(self).__name__) < (other.id, type(other).__name__)

    def __repr__(self) -> str:
        return self.universal_id

    def __str__(self) -> str:
        return self.universal_id

    def can_be_deleted(self) -> bool:
        """Override to veto deletion of this object (and therefore of its parents)."""
        return True

    ##############################
    # 2) Field errors and warnings
    ##############################

    def set_field_error(self, field_name: str, message: str, invalid_content: Any = None) -> None:
        self._field_errors[field_name] = FieldError(
            is_critical=True, field_name=field_name, message=message, invalid_content=invalid_content
        )

    def set_field_warning(self, field_name: str, message: str, invalid_content: Any = None) -> None:
        self._field_errors[field_name] = FieldError(
            is_critical=False, field_name=field_name, message=message, invalid_content=invalid_content
        )

    def clear_field_error(self, field_name: str) -> None:
        self._field_errors.pop(field_name, None)

    def clear_errors(self) -> None:
        self._field_errors.clear()
        self._current_exception = None

    def is_valid(self) -> bool:
        """True if no field carries a critical error."""
        return not any(error.is_critical for error in self._field_errors.values())

    def has_errors_or_warnings(self) -> bool:
        return bool(self._field_errors)

    def get_field_error(self, field_name: str) -> Optional[FieldError]:
        return self._field_errors.get(field_name)

    def get_invalid_fields(self) -> Set[str]:
        return {name for name, error in self._field_errors.items() if error.is_critical}

    def get_errors_and_warnings(self) -> List[FieldError]:
        return list(self._field_errors.values())

    ##############################
    # 3) Persistence shortcuts
    ##############################

    def _require_controller(self) -> Any:
        if self._controller is None:
            raise DomainError(f"{self.universal_id} is not attached to a controller")
        return self._controller

    def save(self) -> bool:
        """Save this object through the controller it is registered in."""
        return self._require_controller().save(self)

    def delete(self) -> bool:
        """Delete this object (and its children) through the controller it is registered in."""
        return self._require_controller().delete(self)
