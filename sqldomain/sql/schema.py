"""
Schema derived from the registered domain classes.

Builds SQLAlchemy tables following the naming conventions of sqldomain.sql.naming,
so ``SqlRegistry.register_table_associations()`` accepts the result:

- one table per registered class; derived class tables share the id of the hierarchy
  root table through a foreign key with ON DELETE CASCADE
- ``last_modified`` on hierarchy root tables, indexed for data horizon queries
- reference columns are foreign keys; they cascade deletes if the referencing class is
  data horizon controlled or ``Column(on_delete_cascade=True)`` is given
- multi-column unique constraints and indexes declared with ``__unique_constraints__``
  and ``__indexes__``
- one entry table per complex field with a unique constraint per owner and element,
  order or key
"""
import enum
import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import (
    BigInteger, Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, LargeBinary,
    Index, MetaData, Numeric, String, Table, Time, UniqueConstraint
)
from sqlalchemy.engine import Engine

from sqldomain.converters import converter_for
from sqldomain.domain.registry import CollectionKind, DomainField, Registry
from sqldomain.sql import naming

logger = logging.getLogger(__name__)


def column_type(tp: Any, size: int = naming.DEFAULT_TEXT_SIZE) -> Any:
    """SQLAlchemy column type for a scalar field or element type; types stored as string get text columns."""
    if converter_for(tp) is not None:
        return String(size)
    if isinstance(tp, type) and issubclass(tp, enum.Enum):
        return String(max([len(member.name) for member in tp] + [1]))
    if tp is bool:
        return Boolean()
    if tp is int:
        return BigInteger()
    if tp is float:
        return Float()
    if tp is Decimal:
        return Numeric(28, 10)
    if tp is datetime:
        return DateTime()
    if tp is date:
        return Date()
    if tp is time:
        return Time()
    if tp is bytes:
        return LargeBinary()
    return String(size)


def _reference_column(registry: Registry, domain_class: type, ref_field: DomainField, circular: bool) -> Column:
    table = naming.table_name(domain_class)
    column = naming.column_name(ref_field)
    cascade = registry.is_data_horizon_controlled(domain_class) or (
        ref_field.column is not None and ref_field.column.on_delete_cascade
    )
    foreign_key = ForeignKey(
        f"{naming.table_name(ref_field.type)}.{naming.ID_COL}",
        name=f"fk_{table}_{column}",
        ondelete="CASCADE" if cascade else None,
        use_alter=circular,
    )
    unique = ref_field.column is not None and ref_field.column.unique
    return Column(column, BigInteger, foreign_key, nullable=ref_field.nullable, unique=unique, index=not unique)


def _class_table(registry: Registry, domain_class: type, metadata: MetaData) -> Table:
    name = naming.table_name(domain_class)
    circular = registry.determine_circular_references()

    columns: List[Any] = []
    if registry.is_base_domain_class(domain_class):
        columns.append(Column(naming.ID_COL, BigInteger, primary_key=True, autoincrement=False))
        columns.append(Column(naming.DOMAIN_CLASS_COL, String(naming.DOMAIN_CLASS_SIZE), nullable=False))
        columns.append(Column(naming.LAST_MODIFIED_COL, DateTime, nullable=False, index=True))
    else:
        base = naming.table_name(registry.get_base_domain_class(domain_class))
        columns.append(Column(
            naming.ID_COL, BigInteger,
            ForeignKey(f"{base}.{naming.ID_COL}", ondelete="CASCADE"),
            primary_key=True, autoincrement=False
        ))
        columns.append(Column(naming.DOMAIN_CLASS_COL, String(naming.DOMAIN_CLASS_SIZE), nullable=False))

    for data_field in registry.get_data_fields(domain_class):
        unique = data_field.column is not None and data_field.column.unique
        columns.append(Column(
            naming.column_name(data_field),
            column_type(data_field.type, naming.text_size(data_field)),
            nullable=data_field.nullable,
            unique=unique,
        ))

    for ref_field in registry.get_reference_fields(domain_class):
        columns.append(_reference_column(registry, domain_class, ref_field, ref_field in circular))

    for fields in registry.get_table_unique_constraints(domain_class):
        column_names = [naming.column_name(f) for f in fields]
        columns.append(UniqueConstraint(*column_names, name=f"uix_{name}_{'_'.join(column_names)}"))

    table = Table(name, metadata, *columns)
    for fields in registry.get_table_indexes(domain_class):
        column_names = [naming.column_name(f) for f in fields]
        Index(f"ix_{name}_{'_'.join(column_names)}", *[table.c[c] for c in column_names])
    return table


def _entry_table(domain_field: DomainField, metadata: MetaData) -> Table:
    name = naming.entry_table_name(domain_field)
    owner = naming.owner_column_name(domain_field)
    owner_table = naming.table_name(domain_field.declaring_class)

    columns: List[Any] = [
        Column(owner, BigInteger, ForeignKey(f"{owner_table}.{naming.ID_COL}", ondelete="CASCADE"),
               nullable=False, index=True),
    ]
    if domain_field.collection is CollectionKind.DICT:
        columns.append(Column(naming.ENTRY_KEY_COL, column_type(domain_field.key_type), nullable=False))
        columns.append(Column(naming.ENTRY_VALUE_COL, column_type(domain_field.value_type), nullable=True))
        columns.append(UniqueConstraint(owner, naming.ENTRY_KEY_COL, name=f"uix_{name}_key"))
    elif domain_field.collection is CollectionKind.LIST:
        columns.append(Column(naming.ELEMENT_COL, column_type(domain_field.element_type), nullable=True))
        columns.append(Column(naming.ORDER_COL, Integer, nullable=False))
        columns.append(UniqueConstraint(owner, naming.ORDER_COL, name=f"uix_{name}_order"))
    else:
        columns.append(Column(naming.ELEMENT_COL, column_type(domain_field.element_type), nullable=True))
        columns.append(UniqueConstraint(owner, naming.ELEMENT_COL, name=f"uix_{name}_element"))
    return Table(name, metadata, *columns)


def build_metadata(registry: Registry, metadata: Optional[MetaData] = None) -> MetaData:
    """
    Build the tables of all registered domain classes.

    Args:
        registry: Registry with registered domain classes
        metadata: MetaData to add the tables to (a new one by default)

    Returns:
        The MetaData holding the tables
    """
    metadata = metadata if metadata is not None else MetaData()
    for domain_class in registry.registered_domain_classes:
        _class_table(registry, domain_class, metadata)
        for complex_field in registry.get_complex_fields(domain_class):
            _entry_table(complex_field, metadata)
    return metadata


def create_schema(engine: Engine, registry: Registry) -> MetaData:
    """Create the missing tables of all registered domain classes."""
    metadata = build_metadata(registry)
    metadata.create_all(engine)
    logger.info(f"Created schema with {len(metadata.tables)} tables")
    return metadata
