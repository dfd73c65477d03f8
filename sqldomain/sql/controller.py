############################################################
# controller.py
############################################################

"""
Object store backed by a relational database.

SqlDomainController adds the persistence operations to the in-heap DomainController:

1. STARTUP:
   - ``initialize()`` registers the domain classes and binds them to the live schema
     (optionally creating the schema first)

2. LOADING:
   - ``synchronize()`` saves unsaved objects, loads all (horizon restricted) objects,
     completes references and evicts objects which fell out of the data horizon
   - ``load_only()`` and ``reload()`` load selectively

3. SAVING AND DELETING:
   - ``save()`` persists the changes of one object in one transaction
   - ``delete()`` removes an object with all its children in one transaction

4. EXCLUSIVE ALLOCATION:
   - Delegated to ExclusiveAllocator (see sqldomain.sql.allocation)

Snapshots of the last saved or loaded field values are kept per object and are the
base of change detection.
"""
import enum
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Type, TypeVar, Union

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from sqldomain.common import logically_equal
from sqldomain.config import DomainConfig
from sqldomain.domain.controller import DomainController
from sqldomain.domain.field_error import (
    COLUMN_SIZE_VIOLATION, NOT_NULL_CONSTRAINT_VIOLATION, UNIQUE_CONSTRAINT_VIOLATION
)
from sqldomain.domain.object import DomainObject
from sqldomain.domain.registry import FieldKind
from sqldomain.errors import DeletionFailure, SaveTransactionFailure
from sqldomain.sql.allocation import AllocationCounters, ExclusiveAllocator, Update
from sqldomain.sql.conversion import Crypter, ValueConverter
from sqldomain.sql.deleter import Deleter
from sqldomain.sql.engine import create_domain_engine
from sqldomain.sql.loader import Loader, Record, RecordsByClass
from sqldomain.sql.mapping import SqlRegistry
from sqldomain.sql.saver import SaveContext, Saver
from sqldomain.sql.schema import create_schema

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DomainObject)


class SqlDomainController(DomainController):
    """Object store persisting its objects through SQLAlchemy."""

    registry: SqlRegistry

    def __init__(self, config: Optional[DomainConfig] = None, engine: Optional[Engine] = None,
                 crypter: Optional[Crypter] = None):
        super().__init__(SqlRegistry())
        self.config = config if config is not None else DomainConfig()
        self.engine = engine if engine is not None else create_domain_engine(self.config.database_url)
        self.converter = ValueConverter(self.config, crypter)
        self.allocator = ExclusiveAllocator(self)
        self._records: Dict[DomainObject, Record] = {}

    ##############################
    # 1) Startup
    ##############################

    def initialize(self, root: Type[DomainObject], *targets: Union[type, str], create_tables: bool = False) -> None:
        """
        Register domain classes and bind them to the database schema.

        Args:
            root: Root persistence type
            *targets: Object domain classes or package names to scan
            create_tables: Create missing tables from the registered classes first

        Raises:
            RegistrationError: If a class or field cannot be registered
            SchemaInconsistency: If the schema does not match the registered classes
        """
        self.register_domain_classes(root, *targets)
        if create_tables:
            create_schema(self.engine, self.registry)
        with self.engine.begin() as connection:
            self.registry.register_table_associations(connection)

        crypt_fields = [
            f.qualified_name
            for c in self.registry.registered_domain_classes
            for f in self.registry.get_data_fields(c)
            if f.is_crypt
        ]
        if crypt_fields and not self.converter.can_encrypt:
            logger.warning(f"No crypter or password configured - values of {crypt_fields} are stored unencrypted")

    def close(self) -> None:
        self.engine.dispose()

    ##############################
    # 2) Snapshots
    ##############################

    def get_record(self, obj: DomainObject) -> Optional[Record]:
        with self._lock:
            return self._records.get(obj)

    def set_record(self, obj: DomainObject, record: Record) -> None:
        with self._lock:
            self._records[obj] = record

    def unregister(self, obj: DomainObject) -> None:
        with self._lock:
            super().unregister(obj)
            self._records.pop(obj, None)

    ##############################
    # 3) Loading
    ##############################

    def _object_classes_of(self, domain_class: type) -> List[type]:
        return [c for c in self.registry.object_domain_classes if issubclass(c, domain_class)]

    def _load(self, domain_class: Type[T], **selection: Any) -> Set[T]:
        with self.engine.begin() as connection:
            loader = Loader(self, connection)
            records: RecordsByClass = {
                object_class: loader.retrieve_records(object_class, **selection)
                for object_class in self._object_classes_of(domain_class)
            }
            loader.load_with_closure(records)

        selected: Set[T] = set()
        for object_class, by_id in records.items():
            for object_id in by_id:
                obj = self.find(object_class, object_id)
                if obj is not None:
                    selected.add(obj)
        return selected

    def load_only(self, domain_class: Type[T], where: Optional[str] = None, max_count: int = 0) -> Set[T]:
        """
        Load the objects of a class matching a raw WHERE fragment, with all objects they reference.

        Args:
            domain_class: Class of the objects (may be abstract)
            where: WHERE clause body using table and column names, e.g. ``"dom_order.status = 'NEW'"``
            max_count: Maximum number of objects per object domain class (0 for all)

        Returns:
            The loaded objects matching the fragment
        """
        loaded = self._load(domain_class, where=where, max_count=max_count)
        logger.info(f"Loaded {len(loaded)} {domain_class.__name__} objects (where: {where})")
        return loaded

    def load_by_ids(self, domain_class: Type[T], ids: Iterable[int]) -> Set[T]:
        return self._load(domain_class, ids=sorted(set(ids)))

    def reload(self, obj: DomainObject) -> bool:
        """
        Refresh a stored object from the database.

        Returns:
            False if the object is not stored or does not exist in the database anymore (it is unregistered then)
        """
        if not obj.is_stored:
            logger.warning(f"{obj} was never stored and cannot be reloaded")
            return False
        if not self.is_registered(obj) and not self.register_by_id(obj, obj.id):
            logger.warning(f"Id of {obj} is used by another registered object - not reloaded")
            return False

        with self.engine.begin() as connection:
            loader = Loader(self, connection)
            records = loader.retrieve_records(type(obj), ids=[obj.id])
            if not records:
                logger.warning(f"{obj} does not exist in database anymore - unregister it")
                self.unregister(obj)
                return False
            loader.load_with_closure({type(obj): records})
        return True

    def _save_unstored_objects(self) -> None:
        for obj in self.sort(self.find_all_objects(lambda o: not o.is_stored)):
            if obj.is_stored or not self.is_registered(obj):
                continue
            try:
                self.save(obj)
            except SaveTransactionFailure as exc:
                logger.error(f"{obj} could not be saved before synchronization: {exc}")

    def _evict_unreachable(self, classes: List[type], loaded: Set[DomainObject]) -> int:
        """Unregister stored objects of the given classes which were not loaded and are not referenced by kept objects."""
        candidates = {obj for c in classes for obj in self.all(c) if obj.is_stored and obj not in loaded}
        if not candidates:
            return 0

        pending = [obj for obj in self.find_all_objects() if obj not in candidates]
        while pending:
            obj = pending.pop()
            for ref_field in self.registry.get_all_reference_fields(type(obj)):
                parent = ref_field.get(obj)
                if parent is not None and parent in candidates:
                    candidates.discard(parent)
                    pending.append(parent)

        for obj in candidates:
            self.unregister(obj)
        if candidates:
            logger.info(f"Evicted {len(candidates)} objects which are outside the data horizon or deleted in database")
        return len(candidates)

    def synchronize(self, *excluded: type) -> bool:
        """
        Synchronize the object store with the database.

        Unsaved objects are saved first. Objects of data horizon controlled classes are
        loaded only if modified within the data horizon; referenced objects are always
        loaded. Objects which were not loaded and are not referenced anymore are
        unregistered.

        Args:
            *excluded: Classes (and their subclasses) not to load

        Returns:
            True if anything changed in the database since the last synchronization
        """
        self._save_unstored_objects()

        classes = [c for c in self.registry.object_domain_classes if not any(issubclass(c, e) for e in excluded)]
        with self.engine.begin() as connection:
            loader = Loader(self, connection)
            records: RecordsByClass = {
                c: loader.retrieve_records(c, use_horizon=self.registry.is_data_horizon_controlled(c))
                for c in classes
            }
            result = loader.load_with_closure(records)

        evicted = self._evict_unreachable(classes, result.loaded)
        logger.info(
            f"Synchronized {len(classes)} domain classes: {len(result.loaded)} objects loaded, {evicted} evicted"
        )
        return result.has_changes or evicted > 0

    ##############################
    # 4) Saving
    ##############################

    def save(self, obj: DomainObject) -> bool:
        """
        Save an object (and its unsaved parents) in one transaction.

        Returns:
            True if the object was inserted or changed

        Raises:
            SaveTransactionFailure: If the transaction was rolled back; the object keeps its field errors
        """
        context = SaveContext()
        try:
            with self.engine.begin() as connection:
                changed = Saver(self, connection, context).save(obj)
        except SaveTransactionFailure:
            context.rollback()
            raise
        except SQLAlchemyError as exc:
            context.rollback()
            obj._current_exception = exc
            logger.error(f"Saving {obj} failed: {exc}")
            raise SaveTransactionFailure(f"Saving {obj} failed", obj) from exc
        context.commit(self)
        return changed

    def create_and_save(self, domain_class: Type[T], init: Optional[Callable[[T], None]] = None) -> T:
        obj = self.create(domain_class, init)
        self.save(obj)
        return obj

    def has_constraint_violations(self, obj: DomainObject) -> bool:
        """
        Check an object against NOT NULL, UNIQUE and column size constraints in heap.

        Violations are attached to the object as field errors.

        Returns:
            True if any constraint is violated
        """
        violated = False
        for domain_class in self.registry.get_domain_classes_for(type(obj)):
            for domain_field in self.registry.get_data_and_reference_fields(domain_class):
                value = domain_field.get(obj)
                if value is None and not domain_field.nullable:
                    obj.set_field_error(domain_field.name, NOT_NULL_CONSTRAINT_VIOLATION)
                    violated = True
                elif isinstance(value, enum.Enum):
                    size = self.registry.get_column_size(domain_field)
                    if size and len(value.name) > size:
                        obj.set_field_error(domain_field.name, COLUMN_SIZE_VIOLATION, value.name)
                        violated = True

            for unique_fields in self.registry.get_unique_constraints(domain_class):
                # NULL never collides in unique constraints
                if any(f.get(obj) is None for f in unique_fields):
                    continue

                def same_values(other: DomainObject) -> bool:
                    return other is not obj and all(
                        (f.get(other) is f.get(obj)) if f.kind is FieldKind.REFERENCE
                        else logically_equal(f.get(other), f.get(obj))
                        for f in unique_fields
                    )

                duplicate = self.find_any(domain_class, same_values)
                if duplicate is not None:
                    for unique_field in unique_fields:
                        obj.set_field_error(unique_field.name, f"{UNIQUE_CONSTRAINT_VIOLATION} (as {duplicate})")
                    violated = True

        if violated:
            logger.warning(f"{obj} violates constraints: {sorted(obj.get_invalid_fields())}")
        return violated

    def all_valid(self, domain_class: type) -> bool:
        """True if no registered object of the class carries a critical field error."""
        return all(obj.is_valid() for obj in self.all(domain_class))

    ##############################
    # 5) Deleting
    ##############################

    def _restore_after_failed_deletion(self, deleter: Deleter) -> None:
        for other, ref_field, target in reversed(deleter.reset_references):
            ref_field.set(other, target)
        for deleted, record in reversed(deleter.unregistered):
            if self.register_by_id(deleted, deleted.id):
                if record:
                    self.set_record(deleted, record)
            else:
                logger.error(f"{deleted} could not be re-registered after failed deletion")

    def delete(self, obj: DomainObject) -> bool:
        """
        Delete an object and all objects referencing it, directly or indirectly.

        Returns:
            False if the object or one of its children refuses deletion; nothing is changed then

        Raises:
            DeletionFailure: If the transaction was rolled back; all objects are registered again
        """
        if not self.is_registered(obj):
            logger.warning(f"{obj} is not registered and cannot be deleted")
            return False
        if not self.can_be_deleted_recursive(obj):
            logger.warning(f"{obj} cannot be deleted")
            return False

        deleter: Optional[Deleter] = None
        try:
            with self.engine.begin() as connection:
                deleter = Deleter(self, connection)
                deleter.delete_recursive(obj, [])
        except SQLAlchemyError as exc:
            if deleter is not None:
                self._restore_after_failed_deletion(deleter)
            obj._current_exception = exc
            logger.error(f"Deletion of {obj} failed: {exc}")
            raise DeletionFailure(f"Deletion of {obj} failed", obj) from exc

        for deleted, _ in deleter.unregistered:
            deleted._is_stored = False
        logger.info(f"Deleted {obj} ({len(deleter.unregistered)} objects)")
        return True

    ##############################
    # 6) Exclusive allocation
    ##############################

    @property
    def allocation_counters(self) -> AllocationCounters:
        return self.allocator.counters

    def allocate_exclusively(self, domain_class: Type[T], marker_class: type, where: Optional[str] = None,
                             max_count: int = 0, update: Optional[Update] = None) -> Set[T]:
        return self.allocator.allocate_exclusively(domain_class, marker_class, where, max_count, update)

    def allocate_object_exclusively(self, obj: DomainObject, marker_class: type, update: Optional[Update] = None) -> bool:
        return self.allocator.allocate_object_exclusively(obj, marker_class, update)

    def release_object(self, obj: DomainObject, marker_class: type, update: Optional[Update] = None) -> bool:
        return self.allocator.release_object(obj, marker_class, update)

    def release_objects(self, objects: Iterable[DomainObject], marker_class: type, update: Optional[Update] = None) -> int:
        return self.allocator.release_objects(objects, marker_class, update)

    def compute_exclusively_on_objects(self, domain_class: Type[T], marker_class: type, where: Optional[str],
                                       update: Update) -> Set[T]:
        return self.allocator.compute_exclusively_on_objects(domain_class, marker_class, where, update)
