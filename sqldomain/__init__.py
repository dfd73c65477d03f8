"""
sqldomain keeps an in-heap graph of pydantic domain objects synchronized with a
relational database.
"""
from .annotations import Accumulation, Changed, Column, Created, Crypt, Deprecated, Removed, Secret, StoreAsString
from .config import DomainConfig, parse_period
from .converters import register_string_converter
from .domain import DomainController, DomainObject, FieldError
from .errors import (
    DeletionFailure, DomainError, ObjectNotFound, RegistrationError, SaveTransactionFailure, SchemaInconsistency
)
from .sql import SqlDomainController, create_domain_engine, create_schema

__all__ = [
    "Accumulation", "Changed", "Column", "Created", "Crypt", "Deprecated", "Removed", "Secret", "StoreAsString",
    "DomainConfig", "parse_period", "register_string_converter",
    "DomainController", "DomainObject", "FieldError",
    "DeletionFailure", "DomainError", "ObjectNotFound", "RegistrationError", "SaveTransactionFailure",
    "SchemaInconsistency",
    "SqlDomainController", "create_domain_engine", "create_schema",
]
