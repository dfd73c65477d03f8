"""
Naming conventions linking domain classes and fields to tables and columns.

All generated names are lower case so callers may use them unquoted in raw WHERE
fragments on every database.
"""
from sqldomain.common import to_snake
from sqldomain.domain.registry import DomainField, FieldKind

# Standard columns of domain class tables
ID_COL = "id"
DOMAIN_CLASS_COL = "domain_class"
LAST_MODIFIED_COL = "last_modified"

# Standard columns of entry tables
ELEMENT_COL = "element"
ORDER_COL = "element_order"
ENTRY_KEY_COL = "entry_key"
ENTRY_VALUE_COL = "entry_value"

TABLE_PREFIX = "dom_"
SECRET_PREFIX = "sec_"
DEFAULT_TEXT_SIZE = 1024
DOMAIN_CLASS_SIZE = 64

RESERVED_WORDS = {"start", "end", "count", "number", "comment", "date", "type", "group", "file", "longtext", "order"}


def _class_name_part(domain_class: type) -> str:
    """Snake case name including the names of enclosing classes (``Order.InProgress`` -> ``order_in_progress``)."""
    parts = domain_class.__qualname__.split(".")
    if "<locals>" in parts:
        parts = parts[len(parts) - parts[::-1].index("<locals>"):]
    return "_".join(to_snake(part) for part in parts)


def table_name(domain_class: type) -> str:
    override = domain_class.__dict__.get("__table_name__")
    if override:
        return override
    return TABLE_PREFIX + _class_name_part(domain_class)


def column_name(domain_field: DomainField) -> str:
    if domain_field.column is not None and domain_field.column.name:
        return domain_field.column.name
    name = to_snake(domain_field.name)
    if domain_field.kind is FieldKind.REFERENCE:
        return name + "_id"
    if domain_field.is_secret:
        return SECRET_PREFIX + name
    if name in RESERVED_WORDS:
        return TABLE_PREFIX + name
    return name


def entry_table_name(domain_field: DomainField) -> str:
    if domain_field.column is not None and domain_field.column.entry_table:
        return domain_field.column.entry_table
    return f"{table_name(domain_field.declaring_class)}_{column_name(domain_field)}"


def owner_column_name(domain_field: DomainField) -> str:
    return to_snake(domain_field.declaring_class.__name__) + "_id"


def text_size(domain_field: DomainField) -> int:
    if domain_field.column is not None and domain_field.column.size:
        return domain_field.column.size
    return DEFAULT_TEXT_SIZE
