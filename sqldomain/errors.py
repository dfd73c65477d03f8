"""
Error taxonomy of the persistence engine.

Startup errors (registration, schema) abort initialization. Per-field problems are
not raised; they are attached to the affected object as FieldError records
(see sqldomain.domain.object).
"""
from typing import List, Optional


class DomainError(Exception):
    """Base class for all errors raised by sqldomain."""


class RegistrationError(DomainError):
    """A domain class or field cannot be registered."""


class SchemaInconsistency(DomainError):
    """Registered domain classes do not match the live database schema."""

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = problems or []


class ObjectNotFound(DomainError, LookupError):
    """Requested object is not registered in the object store."""

    def __init__(self, domain_class: type, object_id: int):
        super().__init__(f"{domain_class.__name__}@{object_id} is not registered")
        self.domain_class = domain_class
        self.object_id = object_id


class SaveTransactionFailure(DomainError):
    """A save transaction was rolled back. The cause is chained as __cause__."""

    def __init__(self, message: str, obj: Optional[object] = None):
        super().__init__(message)
        self.obj = obj


class DeletionFailure(DomainError):
    """A delete transaction was rolled back and all affected objects were re-registered."""

    def __init__(self, message: str, obj: Optional[object] = None):
        super().__init__(message)
        self.obj = obj
