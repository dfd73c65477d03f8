"""
Deletion of objects together with their direct and indirect children.

Objects are unregistered first so they cannot be found while the deletion runs.
Children are deleted before their parent. References from objects which are being
deleted in the same run back to the current object (circular references) are reset
before the current object's rows are deleted.
"""
import logging
from typing import List, TYPE_CHECKING, Tuple

from sqlalchemy import delete, update
from sqlalchemy.engine import Connection

from sqldomain.domain.object import DomainObject
from sqldomain.domain.registry import DomainField
from sqldomain.sql import naming
from sqldomain.sql.entries import delete_entries
from sqldomain.sql.loader import Record

if TYPE_CHECKING:
    from sqldomain.sql.controller import SqlDomainController

logger = logging.getLogger(__name__)


class Deleter:
    def __init__(self, controller: "SqlDomainController", connection: Connection):
        self.controller = controller
        self.registry = controller.registry
        self.connection = connection
        self.unregistered: List[Tuple[DomainObject, Record]] = []
        self.reset_references: List[Tuple[DomainObject, DomainField, DomainObject]] = []

    def _reset_circular_references(self, obj: DomainObject, in_deletion: List[DomainObject]) -> None:
        for other in in_deletion:
            for ref_field in self.registry.get_all_reference_fields(type(other)):
                if ref_field.get(other) is not obj:
                    continue
                logger.debug(f"Reset circular reference {ref_field.qualified_name} of {other} to {obj} before deleting {obj}")
                ref_field.set(other, None)
                self.reset_references.append((other, ref_field, obj))
                if other.is_stored:
                    table = self.registry.get_table_for(ref_field.declaring_class)
                    column = self.registry.get_column_for(ref_field)
                    self.connection.execute(
                        update(table).where(table.c[naming.ID_COL] == other.id).values({column.name: None})
                    )

    def _delete_rows(self, obj: DomainObject) -> None:
        for domain_class in reversed(self.registry.get_domain_classes_for(type(obj))):
            for complex_field in self.registry.get_complex_fields(domain_class):
                delete_entries(self.connection, self.registry, complex_field, obj.id)
            table = self.registry.get_table_for(domain_class)
            result = self.connection.execute(delete(table).where(table.c[naming.ID_COL] == obj.id))
            if result.rowcount != 1:
                logger.warning(f"Record of {obj} in '{table.name}' did not exist")

    def delete_recursive(self, obj: DomainObject, in_deletion: List[DomainObject], depth: int = 0) -> None:
        """
        Unregister an object and its children and delete their rows.

        Args:
            obj: Object to delete
            in_deletion: Objects whose deletion is in progress (checked for circular references)
            depth: Recursion depth for log output
        """
        logger.debug(f"{'  ' * depth}Delete {obj}")
        self.unregistered.append((obj, dict(self.controller.get_record(obj) or {})))
        self.controller.unregister(obj)
        in_deletion.append(obj)

        for child in self.controller.get_direct_children(obj):
            self.delete_recursive(child, in_deletion, depth + 1)

        if obj.is_stored:
            self._reset_circular_references(obj, in_deletion)
            self._delete_rows(obj)
            in_deletion.remove(obj)
        else:
            logger.info(f"{'  ' * depth}{obj} was never stored - no records to delete")
