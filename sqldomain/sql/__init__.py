"""
Relational persistence of domain objects through SQLAlchemy Core.
"""
from .controller import SqlDomainController
from .conversion import Crypter
from .engine import create_domain_engine
from .mapping import SqlRegistry
from .schema import build_metadata, create_schema

__all__ = ["SqlDomainController", "Crypter", "create_domain_engine", "SqlRegistry", "build_metadata", "create_schema"]
