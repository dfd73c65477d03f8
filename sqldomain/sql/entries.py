"""
Entry tables of complex fields.

Each complex field owns an entry table with one row per element:

- lists: ``(<owner>_id, element, element_order)``, replaced completely on change
- sets: ``(<owner>_id, element)``, removed elements deleted and new ones inserted
- maps: ``(<owner>_id, entry_key, entry_value)``, removed keys deleted, changed values
  updated and new keys inserted
"""
import copy
import logging
from typing import Any, Dict, Iterable, List

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection

from sqldomain.domain.registry import CollectionKind, DomainField
from sqldomain.sql import naming
from sqldomain.sql.conversion import from_type, to_type
from sqldomain.sql.mapping import SqlRegistry

logger = logging.getLogger(__name__)

# Keeps the number of bound parameters below the limits of all supported databases
MAX_IN_CLAUSE = 500


def chunks(values: List[Any], size: int = MAX_IN_CLAUSE) -> Iterable[List[Any]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def copy_container(domain_field: DomainField, value: Any) -> Any:
    """Independent (deep) copy of a complex field value, None becomes an empty container."""
    if domain_field.collection is CollectionKind.DICT:
        return copy.deepcopy(dict(value or {}))
    if domain_field.collection is CollectionKind.SET:
        return copy.deepcopy(set(value or ()))
    return copy.deepcopy(list(value or ()))


def load_entries(connection: Connection, registry: SqlRegistry, domain_field: DomainField,
                 owner_ids: List[int]) -> Dict[int, Any]:
    """
    Load the complex field values of the given owners.

    Returns:
        Map of owner id to list, set or dict (owners without entries get empty containers)
    """
    table = registry.get_entry_table_for(domain_field)
    owner = registry.get_owner_column_for(domain_field)
    result = {owner_id: domain_field.new_container() for owner_id in owner_ids}

    for chunk in chunks(list(owner_ids)):
        statement = select(table).where(owner.in_(chunk))
        if domain_field.collection is CollectionKind.LIST:
            statement = statement.order_by(owner, table.c[naming.ORDER_COL])
        for row in connection.execute(statement).mappings():
            container = result[row[owner.name]]
            if domain_field.collection is CollectionKind.DICT:
                key = to_type(domain_field.key_type, row[naming.ENTRY_KEY_COL])
                container[key] = to_type(domain_field.value_type, row[naming.ENTRY_VALUE_COL])
            elif domain_field.collection is CollectionKind.LIST:
                container.append(to_type(domain_field.element_type, row[naming.ELEMENT_COL]))
            else:
                container.add(to_type(domain_field.element_type, row[naming.ELEMENT_COL]))
    return result


def _element_condition(column: Any, value: Any, tp: Any) -> Any:
    return column.is_(None) if value is None else column == from_type(value, tp)


def update_entries(connection: Connection, registry: SqlRegistry, domain_field: DomainField,
                   owner_id: int, old_value: Any, new_value: Any) -> None:
    """Apply the difference between the stored and the current value of a complex field."""
    table = registry.get_entry_table_for(domain_field)
    owner = registry.get_owner_column_for(domain_field)

    if domain_field.collection is CollectionKind.LIST:
        connection.execute(delete(table).where(owner == owner_id))
        rows = [
            {owner.name: owner_id, naming.ELEMENT_COL: from_type(element, domain_field.element_type), naming.ORDER_COL: order}
            for order, element in enumerate(new_value or [])
        ]
        if rows:
            connection.execute(insert(table), rows)
        logger.debug(f"Replaced {len(rows)} list entries of {domain_field.qualified_name} for owner {owner_id}")

    elif domain_field.collection is CollectionKind.SET:
        old_set, new_set = set(old_value or ()), set(new_value or ())
        for element in old_set - new_set:
            connection.execute(delete(table).where(owner == owner_id, _element_condition(table.c[naming.ELEMENT_COL], element, domain_field.element_type)))
        added = [{owner.name: owner_id, naming.ELEMENT_COL: from_type(element, domain_field.element_type)} for element in new_set - old_set]
        if added:
            connection.execute(insert(table), added)
        logger.debug(
            f"Updated set entries of {domain_field.qualified_name} for owner {owner_id}: "
            f"{len(old_set - new_set)} removed, {len(added)} added"
        )

    else:
        old_map, new_map = dict(old_value or {}), dict(new_value or {})
        key_column, value_column = table.c[naming.ENTRY_KEY_COL], table.c[naming.ENTRY_VALUE_COL]
        for key in old_map.keys() - new_map.keys():
            connection.execute(delete(table).where(owner == owner_id, _element_condition(key_column, key, domain_field.key_type)))
        changed = [key for key in old_map.keys() & new_map.keys() if old_map[key] != new_map[key]]
        for key in changed:
            connection.execute(
                update(table)
                .where(owner == owner_id, _element_condition(key_column, key, domain_field.key_type))
                .values({value_column.name: from_type(new_map[key], domain_field.value_type)})
            )
        added = [
            {owner.name: owner_id, naming.ENTRY_KEY_COL: from_type(key, domain_field.key_type),
             naming.ENTRY_VALUE_COL: from_type(new_map[key], domain_field.value_type)}
            for key in new_map.keys() - old_map.keys()
        ]
        if added:
            connection.execute(insert(table), added)
        logger.debug(
            f"Updated map entries of {domain_field.qualified_name} for owner {owner_id}: "
            f"{len(old_map.keys() - new_map.keys())} removed, {len(changed)} changed, {len(added)} added"
        )


def delete_entries(connection: Connection, registry: SqlRegistry, domain_field: DomainField, owner_id: int) -> None:
    owner = registry.get_owner_column_for(domain_field)
    connection.execute(delete(registry.get_entry_table_for(domain_field)).where(owner == owner_id))
