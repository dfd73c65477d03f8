############################################################
# saver.py
############################################################

"""
Change detection and persistence of objects.

Saving one object runs within one transaction (together with all parents saved on
its behalf):

1. CHANGE DETECTION:
   - New objects: every registered field is a change
   - Stored objects: fields are compared with the snapshot of the last save or load
     using tolerant equality, references by id

2. ROWS:
   - INSERT from hierarchy root down to the object class, UPDATE the other way round so
     the root's ``last_modified`` is bumped only if anything changed
   - Entry tables of changed complex fields are updated by difference

3. UNSAVED PARENTS:
   - Through a non-nullable reference: the parent is saved first
   - Through a nullable reference: the reference is detached for the INSERT, the parent
     is saved afterwards and the reference restored with an UPDATE, which breaks
     reference cycles between new objects

4. FAILURES:
   - A failing INSERT aborts the transaction; constraint violations are diagnosed and
     attached to the object as field errors
   - A failing UPDATE is retried column by column in savepoints; failing columns get
     field errors and their fields are reset to the database value
   - An UPDATE touching no row means the object was deleted by another instance; it is
     unregistered
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import Table

from sqldomain.common import for_logging, logically_equal, utcnow
from sqldomain.domain.field_error import (
    COLUMN_UPDATE_FAILED, CONTENT_TRUNCATED_IN_DATABASE, REFERENCED_OBJECT_NOT_SAVED
)
from sqldomain.domain.object import DomainObject
from sqldomain.domain.registry import DomainField, FieldKind
from sqldomain.errors import SaveTransactionFailure
from sqldomain.sql import naming
from sqldomain.sql.entries import copy_container, update_entries
from sqldomain.sql.loader import LAST_MODIFIED, Record

if TYPE_CHECKING:
    from sqldomain.sql.controller import SqlDomainController

logger = logging.getLogger(__name__)


class SaveContext:
    """
    State of one save transaction.

    Snapshots are collected here and installed only after commit; on rollback stored
    flags, timestamps and detached references are restored.
    """

    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self.visited: List[DomainObject] = []
        self.records: Dict[DomainObject, Record] = {}
        self.newly_stored: List[DomainObject] = []
        self.previous_last_modified: Dict[DomainObject, Optional[datetime]] = {}
        self.detached: List[Tuple[DomainObject, DomainField, DomainObject]] = []

    def record_for(self, controller: "SqlDomainController", obj: DomainObject) -> Record:
        if obj not in self.records:
            self.records[obj] = dict(controller.get_record(obj) or {})
        return self.records[obj]

    def remember_last_modified(self, obj: DomainObject) -> None:
        self.previous_last_modified.setdefault(obj, obj.last_modified)

    def commit(self, controller: "SqlDomainController") -> None:
        for obj, record in self.records.items():
            if obj.is_stored and controller.is_registered(obj):
                controller.set_record(obj, record)

    def rollback(self) -> None:
        for obj in self.newly_stored:
            obj._is_stored = False
        for obj, last_modified in self.previous_last_modified.items():
            obj.last_modified = last_modified
        for obj, domain_field, parent in self.detached:
            domain_field.set(obj, parent)
        self.detached.clear()


class Saver:
    """Saves objects of one controller within one connection."""

    def __init__(self, controller: "SqlDomainController", connection: Connection, context: SaveContext):
        self.controller = controller
        self.registry = controller.registry
        self.connection = connection
        self.context = context

    ##############################
    # 1) Change detection
    ##############################

    def get_field_changes(self, obj: DomainObject, record: Record, domain_class: type) -> Dict[DomainField, Any]:
        """
        Fields of one class in the chain whose value differs from the snapshot.

        Returns:
            Map of field to current value (referenced object's id for reference fields)
        """
        changes: Dict[DomainField, Any] = {}
        for domain_field in self.registry.get_registered_fields(domain_class):
            value = domain_field.get(obj)
            if domain_field.kind is FieldKind.REFERENCE:
                value = value.id if value is not None else None
            if domain_field not in record and domain_field.kind is not FieldKind.COMPLEX:
                changes[domain_field] = value
            elif not logically_equal(value, record.get(domain_field)):
                changes[domain_field] = value
        return changes

    def _column_values(self, obj: DomainObject, column_changes: Dict[DomainField, Any]) -> Dict[str, Any]:
        """Column values for changed data and reference fields; oversized strings are truncated."""
        values: Dict[str, Any] = {}
        for domain_field, value in column_changes.items():
            if domain_field.kind is FieldKind.DATA and isinstance(value, str) and not domain_field.is_crypt:
                size = self.registry.get_column_size(domain_field)
                if size and len(value) > size:
                    logger.warning(
                        f"Value of {domain_field.qualified_name} of {obj} exceeds column size {size} and is truncated "
                        f"({for_logging(value, domain_field.is_secret)})"
                    )
                    obj.set_field_warning(domain_field.name, CONTENT_TRUNCATED_IN_DATABASE, for_logging(value, domain_field.is_secret))
                    value = value[:size]
                    domain_field.set(obj, value)
                    column_changes[domain_field] = value

            column = self.registry.get_column_for(domain_field)
            if domain_field.kind is FieldKind.REFERENCE:
                values[column.name] = value
            else:
                values[column.name] = self.controller.converter.to_column(domain_field, value)
        return values

    ##############################
    # 2) Unsaved parents
    ##############################

    def _reattach_parent(self, obj: DomainObject, ref_field: DomainField, parent: DomainObject) -> None:
        """Register a stored parent which was evicted, or point the reference to the registered object with its id."""
        if self.controller.register_by_id(parent, parent.id):
            logger.info(f"Re-registered {parent} referenced by {ref_field.qualified_name} of {obj}")
            return
        registered = self.controller.find(ref_field.type, parent.id)
        if registered is not None:
            logger.warning(f"{ref_field.qualified_name} of {obj} referenced a stale copy of {registered} - replaced")
            ref_field.set(obj, registered)

    def _save_or_detach_unstored_parents(self, obj: DomainObject, domain_class: type) -> List[Tuple[DomainField, DomainObject]]:
        detached: List[Tuple[DomainField, DomainObject]] = []
        for ref_field in self.registry.get_reference_fields(domain_class):
            parent = ref_field.get(obj)
            if parent is None:
                continue
            if parent.is_stored:
                if not self.controller.is_registered(parent):
                    self._reattach_parent(obj, ref_field, parent)
                continue

            if self.registry.get_column_for(ref_field).nullable:
                logger.debug(f"Detach unsaved {parent} from {ref_field.qualified_name} of {obj} until {obj} is stored")
                ref_field.set(obj, None)
                detached.append((ref_field, parent))
                self.context.detached.append((obj, ref_field, parent))
            else:
                logger.debug(f"Save {parent} referenced by {ref_field.qualified_name} of {obj} first")
                try:
                    self.save(parent)
                except SaveTransactionFailure:
                    obj.set_field_error(ref_field.name, REFERENCED_OBJECT_NOT_SAVED, str(parent))
                    raise
        return detached

    def _save_detached_parents_and_restore(self, obj: DomainObject, detached: List[Tuple[DomainField, DomainObject]],
                                           record: Record) -> None:
        for ref_field, parent in detached:
            try:
                self.save(parent)
            except SaveTransactionFailure:
                obj.set_field_error(ref_field.name, REFERENCED_OBJECT_NOT_SAVED, str(parent))
                raise

            ref_field.set(obj, parent)
            self.context.detached.remove((obj, ref_field, parent))
            if not parent.is_stored:
                logger.warning(f"{parent} referenced by {ref_field.qualified_name} of {obj} could not be stored")
                continue

            table = self.registry.get_table_for(ref_field.declaring_class)
            column = self.registry.get_column_for(ref_field)
            self.connection.execute(
                update(table).where(table.c[naming.ID_COL] == obj.id).values({column.name: parent.id})
            )
            record[ref_field] = parent.id
            logger.debug(f"Restored reference {ref_field.qualified_name} of {obj} to {parent}")

    ##############################
    # 3) Rows
    ##############################

    def _insert(self, obj: DomainObject, table: Table, values: Dict[str, Any]) -> None:
        try:
            self.connection.execute(insert(table).values(values))
        except SQLAlchemyError as exc:
            obj._current_exception = exc
            if self.context.quiet:
                logger.debug(f"INSERT of {obj} into '{table.name}' failed: {exc.__class__.__name__}")
            else:
                logger.error(f"INSERT of {obj} into '{table.name}' failed: {exc}")
                self.controller.has_constraint_violations(obj)
            raise SaveTransactionFailure(f"INSERT of {obj} into '{table.name}' failed", obj) from exc

    def _update(self, obj: DomainObject, table: Table, values: Dict[str, Any], column_changes: Dict[DomainField, Any]) -> bool:
        statement = update(table).where(table.c[naming.ID_COL] == obj.id).values(values)
        try:
            with self.connection.begin_nested():
                result = self.connection.execute(statement)
        except SQLAlchemyError as exc:
            logger.warning(f"UPDATE of {obj} in '{table.name}' failed ({exc.__class__.__name__}) - update column by column")
            obj._current_exception = exc
            self._analytic_update(obj, table, values, column_changes)
            return True

        if result.rowcount == 0:
            logger.warning(f"{obj} has no record in '{table.name}' anymore (deleted by another instance) - unregister it")
            self.controller.unregister(obj)
            return False
        return True

    def _analytic_update(self, obj: DomainObject, table: Table, values: Dict[str, Any],
                         column_changes: Dict[DomainField, Any]) -> None:
        """Update columns one by one; fields of failing columns get errors and are reset to the database value."""
        id_condition = table.c[naming.ID_COL] == obj.id
        for column_name, value in values.items():
            try:
                with self.connection.begin_nested():
                    self.connection.execute(update(table).where(id_condition).values({column_name: value}))
                continue
            except SQLAlchemyError as exc:
                domain_field = self.registry.get_field_for_column(table, column_name)
                if domain_field is None:
                    raise
                logger.error(f"UPDATE of {domain_field.qualified_name} of {obj} failed: {exc}")
                obj.set_field_error(domain_field.name, f"{COLUMN_UPDATE_FAILED}: {getattr(exc, 'orig', exc)}",
                                    for_logging(domain_field.get(obj), domain_field.is_secret))

            db_value = self.connection.execute(select(table.c[column_name]).where(id_condition)).scalar()
            if domain_field.kind is FieldKind.REFERENCE:
                domain_field.set(obj, self.controller.find(domain_field.type, db_value) if db_value is not None else None)
                column_changes[domain_field] = db_value
            else:
                typed = self.controller.converter.from_column(domain_field, db_value)
                domain_field.set(obj, typed)
                column_changes[domain_field] = typed

    ##############################
    # 4) Save
    ##############################

    def save(self, obj: DomainObject) -> bool:
        """
        Save an object and, where necessary, its unsaved parents.

        Returns:
            True if anything was written for the object itself
        """
        if not self.controller.is_registered(obj):
            if not obj.is_stored:
                self.controller.register(obj)
            elif self.controller.register_by_id(obj, obj.id):
                logger.info(f"Re-registered {obj} for saving")
            else:
                registered = self.controller.find(type(obj), obj.id)
                logger.error(f"{obj} was evicted and a newer copy {registered} is registered - not saved")
                raise SaveTransactionFailure(f"{obj} is a stale copy of a registered object", obj)

        if obj in self.context.visited:
            return False
        self.context.visited.append(obj)

        self.controller.update_accumulations_of_parent_objects(obj)
        obj.clear_errors()

        is_new = not obj.is_stored
        record = self.context.record_for(self.controller, obj)
        chain = self.registry.get_domain_classes_for(type(obj))
        if is_new:
            self.context.remember_last_modified(obj)
            obj.last_modified = utcnow()
        else:
            chain = list(reversed(chain))

        detached: List[Tuple[DomainField, DomainObject]] = []
        was_changed = False

        for domain_class in chain:
            table = self.registry.get_table_for(domain_class)
            is_base = self.registry.is_base_domain_class(domain_class)
            detached.extend(self._save_or_detach_unstored_parents(obj, domain_class))

            changes = self.get_field_changes(obj, record, domain_class)
            column_changes = {f: v for f, v in changes.items() if f.kind is not FieldKind.COMPLEX}
            complex_changes = {f: v for f, v in changes.items() if f.kind is FieldKind.COMPLEX}
            if changes:
                was_changed = True
            values = self._column_values(obj, column_changes)

            if is_new:
                values[naming.ID_COL] = obj.id
                values[naming.DOMAIN_CLASS_COL] = type(obj).__name__
                if is_base:
                    values[naming.LAST_MODIFIED_COL] = obj.last_modified
                self._insert(obj, table, values)
            else:
                if is_base and was_changed:
                    self.context.remember_last_modified(obj)
                    obj.last_modified = utcnow()
                    values[naming.LAST_MODIFIED_COL] = obj.last_modified
                if values and not self._update(obj, table, values, column_changes):
                    return False

            record.update(column_changes)
            if is_base and (is_new or was_changed):
                record[LAST_MODIFIED] = obj.last_modified
            for complex_field, value in complex_changes.items():
                update_entries(self.connection, self.registry, complex_field, obj.id, record.get(complex_field), value)
                record[complex_field] = copy_container(complex_field, value)

        if is_new:
            obj._is_stored = True
            self.context.newly_stored.append(obj)
            logger.debug(f"Inserted {obj}")
        elif was_changed:
            logger.debug(f"Updated {obj}")

        if detached:
            self._save_detached_parents_and_restore(obj, detached, record)
        self.controller.update_accumulations_of_parent_objects(obj)
        return was_changed or is_new
