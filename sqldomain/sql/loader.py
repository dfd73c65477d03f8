############################################################
# loader.py
############################################################

"""
Loading of objects from the database.

Loading runs in three steps:

1. RETRIEVE: one SELECT per object domain class joining the tables of its inheritance
   chain on ``id``, optionally restricted by the data horizon, a raw WHERE fragment or
   an id list; complex fields are read from their entry tables. The result is one
   record per object mapping fields to (converted) values, reference fields to ids.

2. BUILD: new objects are created with the no-argument constructor, filled from the
   record and registered under the loaded id; existing objects get the fields which
   changed in the database since the last snapshot.

3. CLOSURE: references to objects which are not registered are collected; the
   referenced objects are loaded by id (ignoring the data horizon) until no reference
   is left unresolved, then accumulations of all objects with changed references are
   updated.
"""
import logging
from dataclasses import dataclass, field as dataclass_field
from typing import Any, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from sqlalchemy import select, text
from sqlalchemy.engine import Connection

from sqldomain.common import for_logging, logically_equal, utcnow
from sqldomain.domain.field_error import UNRESOLVED_REFERENCE
from sqldomain.domain.object import DomainObject
from sqldomain.domain.registry import DomainField, FieldKind
from sqldomain.sql import naming
from sqldomain.sql.entries import chunks, copy_container, load_entries

if TYPE_CHECKING:
    from sqldomain.sql.controller import SqlDomainController

logger = logging.getLogger(__name__)

# Record key of the hierarchy root's timestamp, all other keys are DomainFields
LAST_MODIFIED = naming.LAST_MODIFIED_COL

Record = Dict[Any, Any]
RecordsByClass = Dict[type, Dict[int, Record]]


@dataclass
class LoadResult:
    has_changes: bool = False
    loaded: Set[DomainObject] = dataclass_field(default_factory=set)
    refs_changed: Set[DomainObject] = dataclass_field(default_factory=set)
    unresolved: List[Tuple[DomainObject, DomainField, int]] = dataclass_field(default_factory=list)


class Loader:
    """Loads records and builds objects for one controller within one connection."""

    def __init__(self, controller: "SqlDomainController", connection: Connection):
        self.controller = controller
        self.registry = controller.registry
        self.connection = connection

    ##############################
    # 1) Retrieve records
    ##############################

    def _select_for(self, domain_class: type) -> Tuple[Any, List[Tuple[DomainField, Any]], Any, Any]:
        chain = self.registry.get_domain_classes_for(domain_class)
        tables = [self.registry.get_table_for(c) for c in chain]
        base, leaf = tables[0], tables[-1]

        from_clause = leaf
        for table in tables[:-1]:
            from_clause = from_clause.join(table, table.c[naming.ID_COL] == leaf.c[naming.ID_COL])

        fields = [
            (domain_field, self.registry.get_column_for(domain_field))
            for chain_class in chain
            for domain_field in self.registry.get_data_and_reference_fields(chain_class)
        ]
        columns = [leaf.c[naming.ID_COL], base.c[naming.LAST_MODIFIED_COL]] + [column for _, column in fields]
        return select(*columns).select_from(from_clause), fields, base, leaf

    def horizon_cutoff(self) -> Any:
        return utcnow() - self.controller.config.data_horizon_period

    def retrieve_records(self, domain_class: type, where: Optional[str] = None, ids: Optional[List[int]] = None,
                         max_count: int = 0, use_horizon: bool = False, exclude_marked_by: Optional[type] = None,
                         ids_only: bool = False) -> Dict[int, Record]:
        """
        Retrieve records of one object domain class.

        Args:
            domain_class: Object domain class
            where: Raw WHERE fragment using table and column names
            ids: Restrict to these ids
            max_count: Maximum number of records (0 for all)
            use_horizon: Restrict to objects modified within the data horizon
            exclude_marked_by: Skip objects having a row with the same id in this class's table
            ids_only: Only select ids, records are empty

        Returns:
            Map of id to record
        """
        statement, fields, base, leaf = self._select_for(domain_class)
        if ids_only:
            statement = statement.with_only_columns(leaf.c[naming.ID_COL])
        if where:
            statement = statement.where(text(where))
        if use_horizon:
            statement = statement.where(base.c[naming.LAST_MODIFIED_COL] >= self.horizon_cutoff())
        if exclude_marked_by is not None:
            marker_table = self.registry.get_table_for(exclude_marked_by)
            statement = statement.where(leaf.c[naming.ID_COL].not_in(select(marker_table.c[naming.ID_COL])))
        if max_count > 0:
            statement = statement.limit(max_count)

        statements = [statement]
        if ids is not None:
            statements = [statement.where(leaf.c[naming.ID_COL].in_(chunk)) for chunk in chunks(list(ids))]

        records: Dict[int, Record] = {}
        for current in statements:
            for row in self.connection.execute(current):
                mapping = row._mapping
                if ids_only:
                    records[mapping[leaf.c[naming.ID_COL]]] = {}
                    continue
                record: Record = {LAST_MODIFIED: mapping[base.c[naming.LAST_MODIFIED_COL]]}
                for domain_field, column in fields:
                    value = mapping[column]
                    if domain_field.kind is not FieldKind.REFERENCE:
                        value = self.controller.converter.from_column(domain_field, value)
                    record[domain_field] = value
                records[mapping[leaf.c[naming.ID_COL]]] = record

        if records and not ids_only:
            for chain_class in self.registry.get_domain_classes_for(domain_class):
                for complex_field in self.registry.get_complex_fields(chain_class):
                    values = load_entries(self.connection, self.registry, complex_field, list(records))
                    for object_id, value in values.items():
                        records[object_id][complex_field] = value

        logger.debug(f"Retrieved {len(records)} records of {domain_class.__name__}")
        return records

    ##############################
    # 2) Build objects
    ##############################

    def _assign(self, obj: DomainObject, values: Record, result: LoadResult, snapshot: Optional[Record]) -> None:
        for key, value in values.items():
            if key == LAST_MODIFIED:
                obj.last_modified = value
                continue

            domain_field: DomainField = key
            if snapshot is not None and domain_field.kind is not FieldKind.REFERENCE:
                current = domain_field.get(obj)
                if not logically_equal(current, snapshot.get(domain_field)):
                    logger.warning(
                        f"Unsaved change of {domain_field.qualified_name} of {obj} is overwritten by database value "
                        f"({for_logging(current, domain_field.is_secret)} -> {for_logging(value, domain_field.is_secret)})"
                    )

            if domain_field.kind is FieldKind.DATA:
                domain_field.set(obj, value)
            elif domain_field.kind is FieldKind.COMPLEX:
                domain_field.set(obj, copy_container(domain_field, value))
            elif value is None:
                domain_field.set(obj, None)
                result.refs_changed.add(obj)
            else:
                parent = self.controller.find(domain_field.type, value)
                if parent is None:
                    domain_field.set(obj, None)
                    result.unresolved.append((obj, domain_field, value))
                else:
                    domain_field.set(obj, parent)
                result.refs_changed.add(obj)

    def build_objects(self, records_by_class: RecordsByClass, result: LoadResult) -> None:
        """Create or update objects from loaded records."""
        for domain_class in self.registry.object_domain_classes:
            for object_id, record in records_by_class.get(domain_class, {}).items():
                obj = self.controller.find(domain_class, object_id)

                if obj is None:
                    candidate = self.controller.instantiate(domain_class)
                    candidate.id = object_id
                    self._assign(candidate, record, result, None)
                    if self.controller.register_by_id(candidate, object_id):
                        candidate._is_stored = True
                        self.controller.set_record(candidate, dict(record))
                        result.loaded.add(candidate)
                        result.has_changes = True
                        continue

                    # Registered concurrently: update the registered object instead
                    result.unresolved = [u for u in result.unresolved if u[0] is not candidate]
                    result.refs_changed.discard(candidate)
                    obj = self.controller.find(domain_class, object_id)
                    if obj is None:
                        logger.error(f"Id {object_id} of loaded {domain_class.__name__} is used by an object of another class")
                        continue

                snapshot = self.controller.get_record(obj) or {}
                changes = {key: value for key, value in record.items() if not logically_equal(value, snapshot.get(key))}
                if changes:
                    if any(key != LAST_MODIFIED for key in changes):
                        logger.debug(f"{obj} was changed in database: {[str(k) for k in changes]}")
                    self._assign(obj, changes, result, snapshot)
                    snapshot.update(changes)
                    self.controller.set_record(obj, snapshot)
                    result.has_changes = True
                obj._is_stored = True
                result.loaded.add(obj)

    ##############################
    # 3) Referential integrity closure
    ##############################

    def _retrieve_missing(self, unresolved: List[Tuple[DomainObject, DomainField, int]]) -> RecordsByClass:
        """Retrieve records of referenced objects which are not registered, by id and regardless of horizon."""
        ids_by_class: Dict[type, Set[int]] = {}
        for _, domain_field, parent_id in unresolved:
            if self.controller.find(domain_field.type, parent_id) is None:
                ids_by_class.setdefault(domain_field.type, set()).add(parent_id)

        # Referenced class may be abstract: determine the object domain class of each id
        ids_by_object_class: Dict[type, Set[int]] = {}
        for referenced_class, ids in ids_by_class.items():
            table = self.registry.get_table_for(referenced_class)
            for chunk in chunks(sorted(ids)):
                statement = select(table.c[naming.ID_COL], table.c[naming.DOMAIN_CLASS_COL]).where(table.c[naming.ID_COL].in_(chunk))
                for object_id, class_name in self.connection.execute(statement):
                    object_class = self.registry.get_domain_class_by_name(class_name)
                    if object_class is None or not self.registry.is_object_domain_class(object_class):
                        logger.error(f"Object {object_id} in table '{table.name}' has unknown domain class '{class_name}'")
                        continue
                    ids_by_object_class.setdefault(object_class, set()).add(object_id)

        records_by_class: RecordsByClass = {}
        for object_class, ids in ids_by_object_class.items():
            records_by_class[object_class] = self.retrieve_records(object_class, ids=sorted(ids))
            logger.info(f"Loaded {len(records_by_class[object_class])} missing referenced {object_class.__name__} objects")
        return records_by_class

    def load_with_closure(self, records_by_class: RecordsByClass) -> LoadResult:
        """
        Build objects from records and load all referenced objects which are not registered.

        Returns:
            LoadResult with the loaded objects and whether anything changed
        """
        result = LoadResult()
        self.build_objects(records_by_class, result)

        while result.unresolved:
            pending = result.unresolved
            result.unresolved = []
            self.build_objects(self._retrieve_missing(pending), result)

            for obj, domain_field, parent_id in pending:
                parent = self.controller.find(domain_field.type, parent_id)
                if parent is None:
                    logger.error(f"{domain_field.qualified_name} of {obj} references {domain_field.type.__name__}@{parent_id} which does not exist")
                    obj.set_field_error(domain_field.name, UNRESOLVED_REFERENCE, parent_id)
                else:
                    domain_field.set(obj, parent)

        for obj in result.refs_changed:
            if self.controller.is_registered(obj):
                self.controller.update_accumulations_of_parent_objects(obj)
        return result
