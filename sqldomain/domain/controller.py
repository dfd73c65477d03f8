############################################################
# controller.py
############################################################

"""
In-heap object store.

The DomainController keeps all live domain objects indexed by class and id and
maintains accumulation fields. It is an explicit instance (one per configuration
or connection), there is no global store.

1. INDICES:
   - One ``id -> object`` map per registered class
   - An object is indexed under its own class and every superclass, so queries on an
     abstract class see the objects of all its subclasses
   - Ids are unique within a class hierarchy

2. ACCUMULATIONS:
   - Every object remembers the referenced object of each reference field it was last
     accumulated under (the accumulation shadow)
   - ``update_accumulations_of_parent_objects()`` moves the object from the old
     parent's accumulation set to the new parent's one

3. QUERIES:
   - Evaluated in heap, never generate SQL
   - Always return fresh collections, the internal indices are never handed out

All index and accumulation changes run under one re-entrant lock. Query predicates
run outside the lock on a copy of the index.
"""
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Type, TypeVar, Union

from sqldomain.domain.ids import IdGenerator
from sqldomain.domain.object import DomainObject
from sqldomain.domain.registry import DomainField, Registry
from sqldomain.errors import ObjectNotFound, RegistrationError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DomainObject)
Predicate = Callable[[Any], bool]


class DomainController:
    """Object store for registered domain classes."""

    def __init__(self, registry: Optional[Registry] = None):
        self.registry = registry if registry is not None else Registry()
        self._lock = threading.RLock()
        self._object_map: Dict[type, Dict[int, DomainObject]] = {}
        self._id_generator = IdGenerator()

    ##############################
    # 1) Registration of classes
    ##############################

    def register_domain_classes(self, root: Type[DomainObject], *targets: Union[type, str]) -> None:
        """
        Register domain classes and prepare the object indices.

        Args:
            root: Root persistence type
            *targets: Object domain classes or package names to scan
        """
        self.registry.register_domain_classes(root, *targets)
        with self._lock:
            for domain_class in self.registry.registered_domain_classes:
                self._object_map.setdefault(domain_class, {})

    def get_domain_class_by_name(self, name: str) -> Optional[type]:
        return self.registry.get_domain_class_by_name(name)

    ##############################
    # 2) Object lifecycle
    ##############################

    def _initialize_fields(self, obj: DomainObject) -> None:
        """Create empty containers for unset complex and accumulation fields, prepare the accumulation shadow."""
        for domain_class in self.registry.get_domain_classes_for(type(obj)):
            info = self.registry.get_info(domain_class)
            for complex_field in info.complex_fields + info.accumulation_fields:
                if complex_field.get(obj) is None:
                    complex_field.set(obj, complex_field.new_container())
            for ref_field in info.reference_fields:
                obj._ref_shadow.setdefault(ref_field.name, None)

    def instantiate(self, domain_class: Type[T]) -> T:
        """Create an unregistered object with the no-argument constructor."""
        obj = domain_class()
        self._initialize_fields(obj)
        return obj

    def create(self, domain_class: Type[T], init: Optional[Callable[[T], None]] = None) -> T:
        """
        Create and register an object.

        Args:
            domain_class: Object domain class
            init: Optional function initializing the object before it is registered

        Returns:
            The registered object
        """
        obj = self.instantiate(domain_class)
        if init is not None:
            init(obj)
        return self.register(obj)

    def register(self, obj: T) -> T:
        """
        Register an object under a fresh id.

        The id is checked against all ids of the object's class hierarchy and advanced
        until it is free.

        Returns:
            The registered object
        """
        domain_class = type(obj)
        if not self.registry.is_object_domain_class(domain_class):
            raise RegistrationError(f"{domain_class.__name__} is not a registered object domain class")
        with self._lock:
            if self.is_registered(obj):
                logger.warning(f"{obj} is already registered")
                return obj
            hierarchy = self._object_map[self.registry.get_base_domain_class(domain_class)]
            new_id = self._id_generator.next_id()
            while new_id in hierarchy:
                new_id += 1
            self._register_by_id(obj, new_id)
        logger.debug(f"Registered {obj}")
        return obj

    def register_by_id(self, obj: DomainObject, object_id: int) -> bool:
        """
        Register an object under a given id (used when loading objects).

        Returns:
            False if another object of the class hierarchy already uses this id
        """
        with self._lock:
            hierarchy = self._object_map[self.registry.get_base_domain_class(type(obj))]
            existing = hierarchy.get(object_id)
            if existing is not None:
                if existing is not obj:
                    logger.debug(f"Id {object_id} is already used by {existing} - {type(obj).__name__} not registered")
                return existing is obj
            self._register_by_id(obj, object_id)
        return True

    def _register_by_id(self, obj: DomainObject, object_id: int) -> None:
        self._initialize_fields(obj)
        obj.id = object_id
        obj._controller = self
        for domain_class in self.registry.get_domain_classes_for(type(obj)):
            self._object_map[domain_class][object_id] = obj
        self.update_accumulations_of_parent_objects(obj)

    def unregister(self, obj: DomainObject) -> None:
        """Remove an object from all class indices and from all accumulations it is member of."""
        with self._lock:
            if not self.is_registered(obj):
                logger.warning(f"{obj} is not registered and cannot be unregistered")
                return
            self.remove_from_accumulations_of_parent_objects(obj)
            for domain_class in self.registry.get_domain_classes_for(type(obj)):
                self._object_map[domain_class].pop(obj.id, None)
        logger.debug(f"Unregistered {obj}")

    def is_registered(self, obj: DomainObject) -> bool:
        with self._lock:
            return self._object_map.get(type(obj), {}).get(obj.id) is obj

    ##############################
    # 3) Accumulations
    ##############################

    def _accumulated_reference_fields(self, obj: DomainObject) -> List[DomainField]:
        return [
            ref_field
            for ref_field in self.registry.get_all_reference_fields(type(obj))
            if self.registry.get_accumulation_field_for(ref_field) is not None
        ]

    def _add_to_accumulation(self, parent: DomainObject, accumulation_field: DomainField, obj: DomainObject) -> None:
        if not isinstance(parent, accumulation_field.declaring_class):
            return
        accumulation = accumulation_field.get(parent) or set()
        if obj in accumulation:
            logger.warning(f"Accumulation {accumulation_field.qualified_name} of {parent} already contains {obj}")
        else:
            # Replaced, never mutated in place
            accumulation_field.set(parent, accumulation | {obj})

    def _remove_from_accumulation(self, parent: DomainObject, accumulation_field: DomainField, obj: DomainObject) -> None:
        if not isinstance(parent, accumulation_field.declaring_class):
            return
        accumulation = accumulation_field.get(parent)
        if accumulation is None or obj not in accumulation:
            logger.warning(f"Accumulation {accumulation_field.qualified_name} of {parent} does not contain {obj}")
        else:
            accumulation_field.set(parent, accumulation - {obj})

    def update_accumulations_of_parent_objects(self, obj: DomainObject) -> None:
        """
        Bring accumulations in line with the current reference field values of an object.

        For every reference field whose value differs from the accumulation shadow the
        object is removed from the old parent's accumulation and added to the new one's.
        Inconsistent accumulation sets are logged, not raised.
        """
        with self._lock:
            for ref_field in self._accumulated_reference_fields(obj):
                accumulation_field = self.registry.get_accumulation_field_for(ref_field)
                old_parent = obj._ref_shadow.get(ref_field.name)
                new_parent = ref_field.get(obj)
                if old_parent is new_parent:
                    continue
                if old_parent is not None:
                    self._remove_from_accumulation(old_parent, accumulation_field, obj)
                if new_parent is not None:
                    self._add_to_accumulation(new_parent, accumulation_field, obj)
                obj._ref_shadow[ref_field.name] = new_parent

    def remove_from_accumulations_of_parent_objects(self, obj: DomainObject) -> None:
        with self._lock:
            for ref_field in self._accumulated_reference_fields(obj):
                accumulation_field = self.registry.get_accumulation_field_for(ref_field)
                parent = obj._ref_shadow.get(ref_field.name)
                if parent is not None:
                    self._remove_from_accumulation(parent, accumulation_field, obj)
                obj._ref_shadow[ref_field.name] = None

    ##############################
    # 4) Queries
    ##############################

    def _snapshot(self, domain_class: type) -> List[DomainObject]:
        with self._lock:
            return list(self._object_map.get(domain_class, {}).values())

    def find(self, domain_class: Type[T], object_id: int) -> Optional[T]:
        with self._lock:
            return self._object_map.get(domain_class, {}).get(object_id)

    def get(self, domain_class: Type[T], object_id: int) -> T:
        """
        Get a registered object.

        Raises:
            ObjectNotFound: If no object of the class (or a subclass) has this id
        """
        obj = self.find(domain_class, object_id)
        if obj is None:
            raise ObjectNotFound(domain_class, object_id)
        return obj

    def find_by_universal_id(self, universal_id: str) -> Optional[DomainObject]:
        class_name, _, object_id = universal_id.partition("@")
        domain_class = self.registry.get_domain_class_by_name(class_name)
        if domain_class is None or not object_id.isdigit():
            return None
        return self.find(domain_class, int(object_id))

    def all(self, domain_class: Type[T]) -> Set[T]:
        return set(self._snapshot(domain_class))

    def find_all(self, domain_class: Type[T], predicate: Optional[Predicate] = None) -> Set[T]:
        return {obj for obj in self._snapshot(domain_class) if predicate is None or predicate(obj)}

    def find_any(self, domain_class: Type[T], predicate: Optional[Predicate] = None) -> Optional[T]:
        for obj in self._snapshot(domain_class):
            if predicate is None or predicate(obj):
                return obj
        return None

    def has_any(self, domain_class: type, predicate: Optional[Predicate] = None) -> bool:
        return self.find_any(domain_class, predicate) is not None

    def count(self, domain_class: type, predicate: Optional[Predicate] = None) -> int:
        return sum(1 for obj in self._snapshot(domain_class) if predicate is None or predicate(obj))

    def find_all_objects(self, predicate: Optional[Predicate] = None) -> Set[DomainObject]:
        """All registered objects of all classes matching the predicate."""
        result: Set[DomainObject] = set()
        for domain_class in self.registry.object_domain_classes:
            result.update(self.find_all(domain_class, predicate))
        return result

    def sort(self, objects: Iterable[T]) -> List[T]:
        """Sort objects by id, which is by creation time."""
        return sorted(objects)

    def group_by(self, domain_class: Type[T], key: Callable[[T], Any],
                 predicate: Optional[Predicate] = None) -> Dict[Any, Set[T]]:
        groups: Dict[Any, Set[T]] = {}
        for obj in self.find_all(domain_class, predicate):
            groups.setdefault(key(obj), set()).add(obj)
        return groups

    def count_by(self, domain_class: Type[T], key: Callable[[T], Any],
                 predicate: Optional[Predicate] = None) -> Dict[Any, int]:
        return {group: len(members) for group, members in self.group_by(domain_class, key, predicate).items()}

    ##############################
    # 5) Children
    ##############################

    def get_direct_children(self, obj: DomainObject) -> Set[DomainObject]:
        """Registered objects referencing the given object through any reference field."""
        children: Set[DomainObject] = set()
        for ref_field in self.registry.get_all_referencing_fields(type(obj)):
            for child in self._snapshot(ref_field.declaring_class):
                if ref_field.get(child) is obj:
                    children.add(child)
        return children

    def is_referenced(self, obj: DomainObject) -> bool:
        return bool(self.get_direct_children(obj))

    def can_be_deleted_recursive(self, obj: DomainObject, checked: Optional[Set[DomainObject]] = None) -> bool:
        """True if the object and all its direct and indirect children allow deletion."""
        if checked is None:
            checked = set()
        if obj in checked:
            return True
        checked.add(obj)
        if not obj.can_be_deleted():
            logger.info(f"{obj} cannot be deleted")
            return False
        for child in self.get_direct_children(obj):
            if not self.can_be_deleted_recursive(child, checked):
                logger.info(f"{obj} cannot be deleted because child {child} cannot be deleted")
                return False
        return True
