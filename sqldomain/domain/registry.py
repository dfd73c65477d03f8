############################################################
# registry.py
############################################################

"""
Metadata registry of domain classes.

The registry discovers domain classes (explicitly or by scanning a package),
classifies their fields and resolves the pairing of accumulation fields with the
reference fields they follow. Everything else in the package works on the
metadata collected here:

1. REGISTRATION ORDER:
   - Superclass first, then every class referenced by a reference field, then nested
     member domain classes, then the class itself
   - A visited set lets cycles of reference fields pass instead of recursing forever

2. FIELD CLASSIFICATION (only fields declared by the class itself, inherited fields
   belong to the superclass):
   - DATA: scalar annotation
   - DATA stored as string: types with a string converter, ``StoreAsString`` fields,
     pydantic value objects and nested collections (see sqldomain.converters)
   - REFERENCE: annotation is a domain class (``Optional[...]`` if nullable)
   - COMPLEX: ``List``/``Set``/``Dict`` of scalars or of values stored as string
   - ACCUMULATION: ``Annotated[Set[Child], Accumulation(...)]``

3. ACCUMULATION PAIRING:
   - Resolved in a second pass after all classes are known
   - Explicit binding (``Accumulation("field")`` or ``Accumulation("Class.field")``) or
     exactly one reference field of the child class pointing to the parent class
"""
import enum
import importlib
import inspect
import logging
import pkgutil
import sys
import types
from dataclasses import dataclass, field as dataclass_field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional, Set, Tuple, Type, Union, get_args, get_origin

from pydantic import BaseModel
from pydantic.fields import FieldInfo

from sqldomain.annotations import Accumulation, Column, Crypt, Deprecated, Removed, Secret, StoreAsString, find_marker
from sqldomain.converters import converter_for, get_registered_converter, register_string_converter
from sqldomain.dependency.graph import DomainClassGraph
from sqldomain.domain.object import DomainObject
from sqldomain.errors import RegistrationError

logger = logging.getLogger(__name__)

SCALAR_TYPES = (str, int, float, bool, Decimal, datetime, date, time, bytes)


class FieldKind(str, enum.Enum):
    DATA = "data"
    REFERENCE = "reference"
    COMPLEX = "complex"
    ACCUMULATION = "accumulation"


class CollectionKind(str, enum.Enum):
    LIST = "list"
    SET = "set"
    DICT = "dict"


@dataclass(eq=False)
class DomainField:
    """
    Metadata of one registered field.

    ``type`` is the scalar type for data fields, the referenced class for reference
    fields and the child class for accumulation fields. Complex fields describe their
    container with ``collection`` and ``element_type`` (or ``key_type``/``value_type``).
    """
    name: str
    declaring_class: Type[DomainObject]
    kind: FieldKind
    type: Any = None
    nullable: bool = False
    collection: Optional[CollectionKind] = None
    element_type: Any = None
    key_type: Any = None
    value_type: Any = None
    column: Optional[Column] = None
    accumulation: Optional[Accumulation] = None
    is_secret: bool = False
    is_crypt: bool = False
    is_deprecated: bool = False

    @property
    def qualified_name(self) -> str:
        return f"{self.declaring_class.__name__}.{self.name}"

    def get(self, obj: DomainObject) -> Any:
        return getattr(obj, self.name, None)

    def set(self, obj: DomainObject, value: Any) -> None:
        setattr(obj, self.name, value)

    def new_container(self) -> Any:
        if self.kind is FieldKind.ACCUMULATION or self.collection is CollectionKind.SET:
            return set()
        if self.collection is CollectionKind.DICT:
            return {}
        return []

    def __repr__(self) -> str:
        return self.qualified_name


@dataclass
class DomainClassInfo:
    """Fields declared by one registered domain class, in declaration order."""
    domain_class: Type[DomainObject]
    data_fields: List[DomainField] = dataclass_field(default_factory=list)
    reference_fields: List[DomainField] = dataclass_field(default_factory=list)
    complex_fields: List[DomainField] = dataclass_field(default_factory=list)
    accumulation_fields: List[DomainField] = dataclass_field(default_factory=list)
    unique_constraints: List[Tuple[DomainField, ...]] = dataclass_field(default_factory=list)
    indexes: List[Tuple[DomainField, ...]] = dataclass_field(default_factory=list)

    def all_fields(self) -> List[DomainField]:
        return self.data_fields + self.reference_fields + self.complex_fields + self.accumulation_fields


##############################
# Type helpers
##############################

def is_abstract(domain_class: type) -> bool:
    """Only the class's own ``__abstract__`` counts, subclasses of abstract classes are concrete."""
    return bool(domain_class.__dict__.get("__abstract__", False))


def is_removed(domain_class: type) -> bool:
    return domain_class.__dict__.get("__removed_in__") is not None


def _is_scalar(tp: Any) -> bool:
    return tp in SCALAR_TYPES or (inspect.isclass(tp) and issubclass(tp, enum.Enum))


def _register_store_as_string(tp: Any, marker: Optional[StoreAsString]) -> None:
    if marker is None or get_registered_converter(tp) is not None:
        return
    register_string_converter(tp, marker.to_string or str, marker.from_string or tp)


def _unwrap_optional(annotation: Any) -> Tuple[bool, Any]:
    """Return (nullable, inner type) for ``Optional[X]``/``X | None``."""
    origin = get_origin(annotation)
    if origin is Union or (hasattr(types, "UnionType") and origin is getattr(types, "UnionType")):
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1 and len(get_args(annotation)) == 2:
            return True, args[0]
    return False, annotation


def _unwrap_annotated(annotation: Any, metadata: List[Any]) -> Any:
    if get_origin(annotation) is Annotated:
        metadata.extend(annotation.__metadata__)
        return get_args(annotation)[0]
    return annotation


def _all_subclasses(cls: type) -> List[type]:
    result = []
    for sub in cls.__subclasses__():
        result.append(sub)
        result.extend(_all_subclasses(sub))
    return result


##############################
# Registry
##############################

class Registry:
    """Classified metadata of all registered domain classes."""

    def __init__(self) -> None:
        self.root: Type[DomainObject] = DomainObject
        self._infos: Dict[type, DomainClassInfo] = {}
        self._ordered: List[type] = []
        self._object_classes: List[type] = []
        self._classes_by_name: Dict[str, type] = {}
        self._chains: Dict[type, List[type]] = {}
        self._accumulation_by_ref: Dict[DomainField, DomainField] = {}
        self._ref_by_accumulation: Dict[DomainField, DomainField] = {}
        self._circular_references: Optional[Set[DomainField]] = None
        self._types_namespace: Dict[str, Any] = {}

    # 1) Registration

    def register_domain_classes(self, root: Type[DomainObject], *targets: Union[type, str]) -> None:
        """
        Register domain classes.

        Args:
            root: Root persistence type, ``DomainObject`` or an abstract subclass of it
            *targets: Object domain classes or names of packages/modules to scan for them

        Raises:
            RegistrationError: If a class or field cannot be registered
        """
        if not (inspect.isclass(root) and issubclass(root, DomainObject)):
            raise RegistrationError(f"Root type {root!r} is not a DomainObject class")
        self.root = root

        candidates: List[type] = []
        for target in targets:
            if isinstance(target, str):
                candidates.extend(self._scan(target))
            elif inspect.isclass(target) and issubclass(target, root) and target is not root:
                candidates.append(target)
            else:
                raise RegistrationError(f"{target!r} is neither a domain class derived from {root.__name__} nor a package name")

        self._types_namespace = {c.__name__: c for c in _all_subclasses(root)}

        visited: Set[type] = set()
        for domain_class in candidates:
            self._register_recursive(domain_class, visited)

        self._check_hierarchy()
        self._resolve_accumulations()
        self._warn_about_horizon_references()
        self._object_classes = [c for c in self._ordered if not is_abstract(c)]
        self._circular_references = None

        logger.info(
            f"Registered {len(self._ordered)} domain classes "
            f"({len(self._object_classes)} object domain classes): {[c.__name__ for c in self._ordered]}"
        )

    def _scan(self, package_name: str) -> List[type]:
        """Find the object domain classes defined in a package (recursively) or module."""
        try:
            package = importlib.import_module(package_name)
        except ImportError as exc:
            raise RegistrationError(f"Package '{package_name}' cannot be imported: {exc}") from exc

        modules = [package]
        if hasattr(package, "__path__"):
            for module_info in pkgutil.walk_packages(package.__path__, prefix=package.__name__ + "."):
                modules.append(importlib.import_module(module_info.name))

        found = []
        for module in modules:
            for _, member in inspect.getmembers(module, inspect.isclass):
                if (issubclass(member, self.root) and member is not self.root
                        and member.__module__ == module.__name__ and not is_abstract(member)):
                    found.append(member)
        logger.debug(f"Found {len(found)} domain classes in '{package_name}'")
        return found

    def _register_recursive(self, domain_class: type, visited: Set[type]) -> None:
        if domain_class in visited or domain_class in self._infos:
            return
        visited.add(domain_class)

        if is_removed(domain_class):
            logger.info(f"Skip registration of {domain_class.__name__} (removed in {domain_class.__dict__['__removed_in__']})")
            return

        superclass = self._superclass(domain_class)
        if superclass is not self.root:
            self._register_recursive(superclass, visited)

        self._ensure_complete(domain_class)
        info = self._classify_fields(domain_class)

        for ref_field in info.reference_fields:
            self._register_recursive(ref_field.type, visited)

        for member in list(vars(domain_class).values()):
            if inspect.isclass(member) and issubclass(member, self.root) and member is not self.root:
                self._register_recursive(member, visited)

        self._check_constructor(domain_class)
        self._infos[domain_class] = info
        self._ordered.append(domain_class)
        self._classes_by_name[domain_class.__name__] = domain_class
        logger.debug(
            f"Registered {domain_class.__name__}: data={[f.name for f in info.data_fields]} "
            f"references={[f.name for f in info.reference_fields]} complex={[f.name for f in info.complex_fields]} "
            f"accumulations={[f.name for f in info.accumulation_fields]}"
        )

        # Children of accumulations are registered after their parent class
        for accumulation_field in info.accumulation_fields:
            self._register_recursive(accumulation_field.type, visited)

    def _superclass(self, domain_class: type) -> type:
        for base in domain_class.__bases__:
            if inspect.isclass(base) and issubclass(base, self.root):
                return base
        raise RegistrationError(f"{domain_class.__name__} is not derived from {self.root.__name__}")

    def _ensure_complete(self, domain_class: type) -> None:
        """Resolve forward references of the pydantic model."""
        if getattr(domain_class, "__pydantic_complete__", False):
            return
        namespace = dict(self._types_namespace)
        module = sys.modules.get(domain_class.__module__)
        if module is not None:
            namespace.update(vars(module))
        try:
            domain_class.model_rebuild(force=True, _types_namespace=namespace)
        except Exception as exc:
            raise RegistrationError(f"Annotations of {domain_class.__name__} cannot be resolved: {exc}") from exc

    def _check_constructor(self, domain_class: type) -> None:
        if is_abstract(domain_class):
            return
        try:
            domain_class()
        except Exception as exc:
            raise RegistrationError(
                f"{domain_class.__name__} cannot be instantiated without arguments "
                f"(all fields need defaults and the constructor must not fail): {exc}"
            ) from exc

    def _check_hierarchy(self) -> None:
        for domain_class in self._ordered:
            if is_abstract(domain_class):
                continue
            subclasses = [c.__name__ for c in self._ordered if c is not domain_class and issubclass(c, domain_class)]
            if subclasses:
                raise RegistrationError(
                    f"{domain_class.__name__} has registered subclasses {subclasses} "
                    f"and therefore must be declared abstract (__abstract__ = True)"
                )

    def _warn_about_horizon_references(self) -> None:
        for domain_class in self._ordered:
            if self.is_data_horizon_controlled(domain_class):
                continue
            for ref_field in self._infos[domain_class].reference_fields:
                if self.is_data_horizon_controlled(ref_field.type):
                    logger.warning(
                        f"{ref_field.qualified_name} references data horizon controlled {ref_field.type.__name__} "
                        f"but {domain_class.__name__} is not data horizon controlled - parents will stay loaded"
                    )

    # 2) Field classification

    def _own_field_names(self, domain_class: type) -> List[str]:
        inherited: Set[str] = set()
        for base in domain_class.__bases__:
            if inspect.isclass(base) and issubclass(base, BaseModel):
                inherited.update(base.model_fields)
        return [name for name in domain_class.model_fields if name not in inherited]

    def _classify_fields(self, domain_class: type) -> DomainClassInfo:
        info = DomainClassInfo(domain_class=domain_class)
        for name in self._own_field_names(domain_class):
            domain_field = self._classify_field(domain_class, name, domain_class.model_fields[name])
            if domain_field is None:
                continue
            if domain_field.kind is FieldKind.DATA:
                info.data_fields.append(domain_field)
            elif domain_field.kind is FieldKind.REFERENCE:
                info.reference_fields.append(domain_field)
            elif domain_field.kind is FieldKind.COMPLEX:
                info.complex_fields.append(domain_field)
            else:
                info.accumulation_fields.append(domain_field)
        info.unique_constraints = self._table_options(domain_class, info, "__unique_constraints__")
        info.indexes = self._table_options(domain_class, info, "__indexes__")
        return info

    def _is_domain_class(self, tp: Any) -> bool:
        return inspect.isclass(tp) and issubclass(tp, self.root) and tp is not self.root

    def _classify_field(self, domain_class: type, name: str, field_info: FieldInfo) -> Optional[DomainField]:
        metadata = list(field_info.metadata)
        annotation = _unwrap_annotated(field_info.annotation, metadata)
        nullable, inner = _unwrap_optional(annotation)
        inner = _unwrap_annotated(inner, metadata)
        qualified = f"{domain_class.__name__}.{name}"

        removed = find_marker(metadata, Removed)
        if removed is not None:
            logger.info(f"Skip field {qualified} (removed in {removed.version})")
            return None

        domain_field = DomainField(
            name=name,
            declaring_class=domain_class,
            kind=FieldKind.DATA,
            nullable=nullable,
            column=find_marker(metadata, Column),
            accumulation=find_marker(metadata, Accumulation),
            is_secret=find_marker(metadata, Secret) is not None,
            is_crypt=find_marker(metadata, Crypt) is not None,
            is_deprecated=find_marker(metadata, Deprecated) is not None,
        )
        origin = get_origin(inner)
        args = get_args(inner)
        store_as_string = find_marker(metadata, StoreAsString)

        if domain_field.accumulation is not None:
            if origin not in (set, frozenset) or len(args) != 1 or not self._is_domain_class(args[0]):
                raise RegistrationError(f"Accumulation field {qualified} must be declared as Set[<domain class>]")
            domain_field.kind = FieldKind.ACCUMULATION
            domain_field.type = args[0]
        elif self._is_domain_class(inner):
            domain_field.kind = FieldKind.REFERENCE
            domain_field.type = inner
        elif store_as_string is not None or get_registered_converter(inner) is not None:
            _register_store_as_string(inner, store_as_string)
            domain_field.type = inner
        elif _is_scalar(inner):
            domain_field.type = inner
        elif origin in (list, set, frozenset, dict):
            domain_field.kind = FieldKind.COMPLEX
            domain_field.type = origin
            if origin is dict:
                if len(args) != 2:
                    raise RegistrationError(f"Map field {qualified} must declare key and value types, not {inner}")
                domain_field.collection = CollectionKind.DICT
                domain_field.key_type = self._element_type(qualified, args[0])
                domain_field.value_type = self._element_type(qualified, args[1])
            else:
                if not args:
                    raise RegistrationError(f"Collection field {qualified} must declare its element type")
                domain_field.collection = CollectionKind.LIST if origin is list else CollectionKind.SET
                domain_field.element_type = self._element_type(qualified, args[0])
        elif converter_for(inner) is not None and not self._contains_domain_class(inner):
            domain_field.type = inner
        else:
            raise RegistrationError(f"Type {field_info.annotation} of field {qualified} cannot be persisted")

        if domain_field.is_crypt and domain_field.type is not str:
            raise RegistrationError(f"Only string fields can be encrypted ({qualified})")
        return domain_field

    def _contains_domain_class(self, tp: Any) -> bool:
        return self._is_domain_class(tp) or any(self._contains_domain_class(arg) for arg in get_args(tp))

    def _element_type(self, qualified: str, annotation: Any) -> Any:
        """Element, key or value type of a complex field: a scalar or a type stored as string."""
        metadata: List[Any] = []
        element = _unwrap_optional(_unwrap_annotated(annotation, metadata))[1]
        element = _unwrap_annotated(element, metadata)
        if self._contains_domain_class(element):
            raise RegistrationError(
                f"Collection field {qualified} of domain objects must be a set marked as Accumulation"
            )
        store_as_string = find_marker(metadata, StoreAsString)
        if store_as_string is not None:
            _register_store_as_string(element, store_as_string)
        elif not _is_scalar(element) and converter_for(element) is None:
            raise RegistrationError(
                f"Collection field {qualified} must have scalar elements or elements stored as string, not {element}"
            )
        return element

    def _table_options(self, domain_class: type, info: DomainClassInfo, option: str) -> List[Tuple[DomainField, ...]]:
        """Field groups of a class level option like ``__unique_constraints__``; fields must be declared by the class."""
        own = {f.name: f for f in info.data_fields + info.reference_fields}
        groups = []
        for names in domain_class.__dict__.get(option, ()):
            names = (names,) if isinstance(names, str) else tuple(names)
            missing = [name for name in names if name not in own]
            if not names or missing:
                raise RegistrationError(
                    f"{option} of {domain_class.__name__} names {missing or 'no'} data or reference fields declared by the class"
                )
            groups.append(tuple(own[name] for name in names))
        return groups

    # 3) Accumulation pairing

    def _resolve_accumulations(self) -> None:
        self._accumulation_by_ref.clear()
        self._ref_by_accumulation.clear()

        for domain_class in self._ordered:
            for accumulation_field in self._infos[domain_class].accumulation_fields:
                if accumulation_field.type not in self._infos:
                    raise RegistrationError(
                        f"Element class {accumulation_field.type.__name__} of accumulation "
                        f"{accumulation_field.qualified_name} is not registered"
                    )
                ref_field = self._find_ref_field_for(accumulation_field)
                other = self._accumulation_by_ref.get(ref_field)
                if other is not None:
                    raise RegistrationError(
                        f"Reference field {ref_field.qualified_name} is bound by accumulations "
                        f"{other.qualified_name} and {accumulation_field.qualified_name}"
                    )
                self._accumulation_by_ref[ref_field] = accumulation_field
                self._ref_by_accumulation[accumulation_field] = ref_field
                logger.debug(f"Accumulation {accumulation_field.qualified_name} follows {ref_field.qualified_name}")

    def _find_ref_field_for(self, accumulation_field: DomainField) -> DomainField:
        parent_class = accumulation_field.declaring_class
        binding = accumulation_field.accumulation.ref_field if accumulation_field.accumulation else None

        if binding:
            if "." in binding:
                class_name, field_name = binding.rsplit(".", 1)
                target_class = self._classes_by_name.get(class_name)
                if target_class is None:
                    raise RegistrationError(f"Class '{class_name}' of accumulation {accumulation_field.qualified_name} is not registered")
            else:
                target_class, field_name = accumulation_field.type, binding
            ref_field = self.get_field(target_class, field_name)
            if ref_field is None or ref_field.kind is not FieldKind.REFERENCE:
                raise RegistrationError(
                    f"'{binding}' bound by accumulation {accumulation_field.qualified_name} is not a reference field"
                )
            if not issubclass(parent_class, ref_field.type):
                raise RegistrationError(
                    f"Reference field {ref_field.qualified_name} cannot point to {parent_class.__name__} "
                    f"(accumulation {accumulation_field.qualified_name})"
                )
            return ref_field

        candidates = [
            ref_field
            for domain_class in self.get_domain_classes_for(accumulation_field.type)
            for ref_field in self._infos[domain_class].reference_fields
            if issubclass(parent_class, ref_field.type)
        ]
        if len(candidates) != 1:
            problem = "no" if not candidates else f"ambiguous ({candidates})"
            raise RegistrationError(
                f"Accumulation {accumulation_field.qualified_name} has {problem} reference field of "
                f"{accumulation_field.type.__name__} pointing to {parent_class.__name__} - bind it explicitly with Accumulation('<field>')"
            )
        return candidates[0]

    # 4) Queries

    @property
    def registered_domain_classes(self) -> List[type]:
        """All registered classes in registration (dependency) order."""
        return list(self._ordered)

    @property
    def object_domain_classes(self) -> List[type]:
        """Registered instantiable classes in registration order."""
        return list(self._object_classes)

    def is_registered(self, domain_class: type) -> bool:
        return domain_class in self._infos

    def is_object_domain_class(self, domain_class: type) -> bool:
        return domain_class in self._infos and not is_abstract(domain_class)

    def is_base_domain_class(self, domain_class: type) -> bool:
        """True for hierarchy roots, the classes directly derived from the root type."""
        return self._superclass(domain_class) is self.root

    def get_domain_class_by_name(self, name: str) -> Optional[type]:
        return self._classes_by_name.get(name)

    def get_info(self, domain_class: type) -> DomainClassInfo:
        try:
            return self._infos[domain_class]
        except KeyError:
            raise RegistrationError(f"{domain_class.__name__} is not a registered domain class") from None

    def get_domain_classes_for(self, domain_class: type) -> List[type]:
        """Inheritance chain from the hierarchy root down to the given class."""
        chain = self._chains.get(domain_class)
        if chain is None:
            chain = []
            current = domain_class
            while current is not self.root:
                chain.insert(0, current)
                current = self._superclass(current)
            self._chains[domain_class] = chain
        return list(chain)

    def get_base_domain_class(self, domain_class: type) -> type:
        return self.get_domain_classes_for(domain_class)[0]

    def is_data_horizon_controlled(self, domain_class: type) -> bool:
        return any(c.__dict__.get("__data_horizon__", False) for c in self.get_domain_classes_for(domain_class))

    def get_data_fields(self, domain_class: type) -> List[DomainField]:
        return list(self.get_info(domain_class).data_fields)

    def get_reference_fields(self, domain_class: type) -> List[DomainField]:
        return list(self.get_info(domain_class).reference_fields)

    def get_complex_fields(self, domain_class: type) -> List[DomainField]:
        return list(self.get_info(domain_class).complex_fields)

    def get_accumulation_fields(self, domain_class: type) -> List[DomainField]:
        return list(self.get_info(domain_class).accumulation_fields)

    def get_table_unique_constraints(self, domain_class: type) -> List[Tuple[DomainField, ...]]:
        """Multi-column unique constraints declared with ``__unique_constraints__``."""
        return list(self.get_info(domain_class).unique_constraints)

    def get_table_indexes(self, domain_class: type) -> List[Tuple[DomainField, ...]]:
        return list(self.get_info(domain_class).indexes)

    def get_data_and_reference_fields(self, domain_class: type) -> List[DomainField]:
        info = self.get_info(domain_class)
        return info.data_fields + info.reference_fields

    def get_registered_fields(self, domain_class: type) -> List[DomainField]:
        """Persisted fields (data, reference and complex) declared by the class."""
        info = self.get_info(domain_class)
        return info.data_fields + info.reference_fields + info.complex_fields

    def get_all_reference_fields(self, domain_class: type) -> List[DomainField]:
        """Reference fields of the class and all its superclasses."""
        return [f for c in self.get_domain_classes_for(domain_class) for f in self._infos[c].reference_fields]

    def get_field(self, domain_class: type, name: str) -> Optional[DomainField]:
        """Find a registered field by name in the class or its superclasses."""
        for chain_class in reversed(self.get_domain_classes_for(domain_class)):
            info = self._infos.get(chain_class)
            if info is None:
                continue
            for domain_field in info.all_fields():
                if domain_field.name == name:
                    return domain_field
        return None

    def get_accumulation_field_for(self, ref_field: DomainField) -> Optional[DomainField]:
        return self._accumulation_by_ref.get(ref_field)

    def get_reference_field_for(self, accumulation_field: DomainField) -> Optional[DomainField]:
        return self._ref_by_accumulation.get(accumulation_field)

    def get_all_referencing_fields(self, domain_class: type) -> List[DomainField]:
        """Reference fields of all registered classes which may point to objects of the given class."""
        return [
            ref_field
            for registered in self._ordered
            for ref_field in self._infos[registered].reference_fields
            if issubclass(domain_class, ref_field.type)
        ]

    def unregister_field(self, domain_field: DomainField) -> None:
        info = self.get_info(domain_field.declaring_class)
        for field_list in (info.data_fields, info.reference_fields, info.complex_fields, info.accumulation_fields):
            if domain_field in field_list:
                field_list.remove(domain_field)
        accumulation_field = self._accumulation_by_ref.pop(domain_field, None)
        if accumulation_field is not None:
            self._ref_by_accumulation.pop(accumulation_field, None)
        self._circular_references = None
        logger.info(f"Unregistered field {domain_field.qualified_name}")

    def determine_circular_references(self) -> Set[DomainField]:
        """
        Find the reference fields which are part of a reference cycle between classes.

        Returns:
            Reference fields whose declaring class and referenced class lie on one cycle
        """
        if self._circular_references is not None:
            return set(self._circular_references)

        def referenced_classes(domain_class: type) -> List[type]:
            # A reference to a class may point to objects of all its subclasses
            return [
                target
                for ref_field in self._infos[domain_class].reference_fields
                for target in self._ordered
                if issubclass(target, ref_field.type)
            ]

        graph = DomainClassGraph()
        graph.build_graph(self._ordered, referenced_classes)

        circular: Set[DomainField] = set()
        for cycle in graph.get_cycles():
            for source, target in zip(cycle, cycle[1:]):
                for ref_field in self._infos[source].reference_fields:
                    if issubclass(target, ref_field.type):
                        circular.add(ref_field)
        if circular:
            logger.info(f"Circular references: {sorted(f.qualified_name for f in circular)}")
        self._circular_references = circular
        return set(circular)
