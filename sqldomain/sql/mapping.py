############################################################
# mapping.py
############################################################

"""
Association of registered domain classes with database tables.

SqlRegistry extends the metadata registry with the bindings of classes to tables,
of data and reference fields to columns and of complex fields to entry tables.
The bindings are reflected from the live schema once at startup and validated:

- every class needs its table with ``id`` and ``domain_class`` columns, hierarchy
  roots additionally ``last_modified``
- every data and reference field needs its column; a non-nullable field bound to a
  nullable column is an error
- every complex field needs its entry table with the owner id column
- missing columns or tables of deprecated fields only produce warnings, the field is
  unregistered
- columns without field produce schema drift warnings
"""
import logging
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import MetaData, Table, inspect
from sqlalchemy.engine import Connection
from sqlalchemy.schema import Column as SqlColumn, UniqueConstraint

from sqldomain.domain.registry import CollectionKind, DomainField, Registry
from sqldomain.errors import SchemaInconsistency
from sqldomain.sql import naming

logger = logging.getLogger(__name__)


class SqlRegistry(Registry):
    """Registry with table and column bindings."""

    def __init__(self) -> None:
        super().__init__()
        self.metadata = MetaData()
        self._tables: Dict[type, Table] = {}
        self._columns: Dict[DomainField, SqlColumn] = {}
        self._entry_tables: Dict[DomainField, Table] = {}
        self._owner_columns: Dict[DomainField, SqlColumn] = {}
        self._fields_by_column: Dict[Tuple[str, str], DomainField] = {}

    ##############################
    # 1) Reflection and validation
    ##############################

    def register_table_associations(self, connection: Connection) -> None:
        """
        Bind all registered classes and fields to the live schema.

        Args:
            connection: Connection used for reflection

        Raises:
            SchemaInconsistency: If a class or a non-deprecated field has no matching table or column
        """
        existing_tables = set(inspect(connection).get_table_names())
        problems: List[str] = []

        for domain_class in self.registered_domain_classes:
            class_problems = self._associate_class(connection, domain_class, existing_tables)
            for problem in class_problems:
                logger.error(problem)
            problems.extend(class_problems)

        if problems:
            raise SchemaInconsistency(
                f"Registered domain classes do not match the database schema ({len(problems)} problems)", problems
            )
        logger.info(f"Associated {len(self._tables)} domain classes with tables")

    def _reflect(self, connection: Connection, name: str) -> Table:
        if name in self.metadata.tables:
            return self.metadata.tables[name]
        return Table(name, self.metadata, autoload_with=connection)

    def _associate_class(self, connection: Connection, domain_class: type, existing_tables: Set[str]) -> List[str]:
        problems: List[str] = []
        name = naming.table_name(domain_class)
        if name not in existing_tables:
            return [f"Table '{name}' for domain class {domain_class.__name__} does not exist"]

        table = self._reflect(connection, name)
        required = [naming.ID_COL, naming.DOMAIN_CLASS_COL]
        if self.is_base_domain_class(domain_class):
            required.append(naming.LAST_MODIFIED_COL)
        for column in required:
            if column not in table.c:
                problems.append(f"Table '{name}' for domain class {domain_class.__name__} lacks column '{column}'")
        if naming.ID_COL in table.c and not table.c[naming.ID_COL].primary_key:
            problems.append(f"Column '{name}.{naming.ID_COL}' for domain class {domain_class.__name__} is not the primary key")

        bound = set(required)
        deprecated: List[DomainField] = []

        for domain_field in self.get_data_and_reference_fields(domain_class):
            column_name = naming.column_name(domain_field)
            if column_name not in table.c:
                if domain_field.is_deprecated:
                    logger.warning(f"Column '{name}.{column_name}' for deprecated field {domain_field.qualified_name} does not exist")
                    deprecated.append(domain_field)
                else:
                    problems.append(f"Column '{name}.{column_name}' for field {domain_field.qualified_name} does not exist")
                continue

            column = table.c[column_name]
            if not domain_field.nullable and column.nullable:
                problems.append(
                    f"Field {domain_field.qualified_name} cannot be None but column '{name}.{column_name}' is nullable"
                )
                continue
            bound.add(column_name)
            self._columns[domain_field] = column
            self._fields_by_column[(name, column_name)] = domain_field

        for domain_field in self.get_complex_fields(domain_class):
            entry_name = naming.entry_table_name(domain_field)
            if entry_name not in existing_tables:
                if domain_field.is_deprecated:
                    logger.warning(f"Entry table '{entry_name}' for deprecated field {domain_field.qualified_name} does not exist")
                    deprecated.append(domain_field)
                else:
                    problems.append(f"Entry table '{entry_name}' for field {domain_field.qualified_name} does not exist")
                continue

            entry_table = self._reflect(connection, entry_name)
            owner_name = naming.owner_column_name(domain_field)
            needed = [owner_name]
            if domain_field.collection is CollectionKind.DICT:
                needed += [naming.ENTRY_KEY_COL, naming.ENTRY_VALUE_COL]
            else:
                needed.append(naming.ELEMENT_COL)
            if domain_field.collection is CollectionKind.LIST:
                needed.append(naming.ORDER_COL)
            missing = [column for column in needed if column not in entry_table.c]
            if missing:
                problems.append(f"Entry table '{entry_name}' for field {domain_field.qualified_name} lacks columns {missing}")
                continue
            self._entry_tables[domain_field] = entry_table
            self._owner_columns[domain_field] = entry_table.c[owner_name]

        for column in table.c:
            if column.name not in bound:
                logger.warning(f"Column '{name}.{column.name}' is not associated with any field of {domain_class.__name__}")

        if not problems:
            self._tables[domain_class] = table
            for domain_field in deprecated:
                self.unregister_field(domain_field)
        return problems

    ##############################
    # 2) Lookups
    ##############################

    def get_table_for(self, domain_class: type) -> Table:
        return self._tables[domain_class]

    def get_column_for(self, domain_field: DomainField) -> SqlColumn:
        return self._columns[domain_field]

    def get_entry_table_for(self, domain_field: DomainField) -> Table:
        return self._entry_tables[domain_field]

    def get_owner_column_for(self, domain_field: DomainField) -> SqlColumn:
        return self._owner_columns[domain_field]

    def get_field_for_column(self, table: Table, column_name: str) -> Optional[DomainField]:
        return self._fields_by_column.get((table.name, column_name))

    def get_column_size(self, domain_field: DomainField) -> Optional[int]:
        column = self._columns.get(domain_field)
        if column is None:
            return None
        return getattr(column.type, "length", None)

    def get_unique_constraints(self, domain_class: type) -> List[List[DomainField]]:
        """Fields of each unique constraint of the class's table (single column constraints included)."""
        table = self._tables[domain_class]
        constraints: List[List[str]] = [[c.name for c in constraint.columns]
                                        for constraint in table.constraints if isinstance(constraint, UniqueConstraint)]
        constraints += [[c.name] for c in table.c if c.unique]
        result = []
        for column_names in constraints:
            fields = [self._fields_by_column.get((table.name, name)) for name in column_names]
            if fields and all(f is not None for f in fields):
                result.append(fields)
        return result
