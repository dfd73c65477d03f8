"""
Conversion between field values and column values.

Enums are stored by name, types with a string converter (see sqldomain.converters)
as strings, encrypted fields go through the configured crypter and everything else
is left to the SQLAlchemy column types. Values read back are
coerced to the field's declared type because reflected column types may differ
from it (e.g. SQLite returns numbers for boolean expressions).
"""
import enum
import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Optional, Protocol, runtime_checkable

from sqldomain.config import DomainConfig
from sqldomain.converters import converter_for
from sqldomain.domain.registry import DomainField

logger = logging.getLogger(__name__)


@runtime_checkable
class Crypter(Protocol):
    """Encryption collaborator for fields marked with ``Crypt``."""

    def encrypt(self, value: str, password: str, salt: str) -> str:
        ...

    def decrypt(self, value: str, password: str, salt: str) -> str:
        ...


def to_type(tp: Any, value: Any) -> Any:
    """Coerce a loaded column value to the declared field (or element) type."""
    if value is None or tp is None:
        return value
    converter = converter_for(tp)
    if converter is not None:
        return converter.from_string(value) if isinstance(value, str) else value
    if isinstance(tp, type) and issubclass(tp, enum.Enum):
        if isinstance(value, tp):
            return value
        try:
            return tp[value]
        except KeyError:
            return tp(value)
    if tp is bool:
        return bool(value)
    if tp is int and not isinstance(value, bool):
        return int(value)
    if tp is float:
        return float(value)
    if tp is Decimal and not isinstance(value, Decimal):
        return Decimal(str(value))
    if tp is str and not isinstance(value, str):
        return str(value)
    if tp is datetime and isinstance(value, str):
        return datetime.fromisoformat(value)
    if tp is date and isinstance(value, datetime):
        return value.date()
    if tp is date and isinstance(value, str):
        return date.fromisoformat(value)
    if tp is time and isinstance(value, str):
        return time.fromisoformat(value)
    if tp is bytes and isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


def from_type(value: Any, tp: Any = None) -> Any:
    """Convert a field (or element) value of the declared type to its column representation."""
    if value is None:
        return None
    converter = converter_for(tp) if tp is not None else None
    if converter is not None:
        return converter.to_string(value)
    if isinstance(value, enum.Enum):
        return value.name
    return value


class ValueConverter:
    """Converts field values of one controller, applying encryption where fields require it."""

    def __init__(self, config: DomainConfig, crypter: Optional[Crypter] = None):
        self.config = config
        self.crypter = crypter

    @property
    def can_encrypt(self) -> bool:
        return self.crypter is not None and bool(self.config.crypt_password)

    def to_column(self, domain_field: DomainField, value: Any) -> Any:
        if value is None:
            return None
        if domain_field.is_crypt and self.can_encrypt:
            return self.crypter.encrypt(value, self.config.crypt_password, self.config.crypt_salt)
        return from_type(value, domain_field.type)

    def from_column(self, domain_field: DomainField, value: Any) -> Any:
        if value is None:
            return None
        if domain_field.is_crypt and self.can_encrypt:
            value = self.crypter.decrypt(value, self.config.crypt_password, self.config.crypt_salt)
        return to_type(domain_field.type, value)
