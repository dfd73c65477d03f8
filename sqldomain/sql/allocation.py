############################################################
# allocation.py
############################################################

"""
Exclusive allocation of objects across threads and controller instances.

An object is claimed by inserting a marker row with the object's id into the table of
a marker class. The database's primary key uniqueness decides which claim wins:

- a claim whose INSERT fails was made by another instance first; the id is dropped
- a claim whose marker is already registered in this controller was made by another
  thread of this instance; the id is dropped
- claimed objects are loaded fresh after the claim, so work starts on current data

Releasing deletes the marker. ``compute_exclusively_on_objects()`` releases in any case,
also if the caller's update raises.

```python
class Order(DomainObject):
    status: str = "NEW"

    class InProgress(DomainObject):
        pass

orders = sdc.allocate_exclusively(Order, Order.InProgress, "dom_order.status = 'NEW'", 10)
```
"""
import logging
import threading
from typing import Callable, Iterable, List, Optional, Set, Type, TypeVar, TYPE_CHECKING

from pydantic import BaseModel
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from sqldomain.domain.object import DomainObject
from sqldomain.errors import SaveTransactionFailure
from sqldomain.sql.loader import Loader
from sqldomain.sql.saver import SaveContext, Saver

if TYPE_CHECKING:
    from sqldomain.sql.controller import SqlDomainController

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DomainObject)
Update = Callable[[DomainObject], None]


class AllocationCounters(BaseModel):
    """Statistics of claim attempts."""
    successful: int = 0
    in_use_by_same_instance: int = 0
    in_use_by_other_instance: int = 0


class ExclusiveAllocator:
    """Claims and releases objects for one controller."""

    def __init__(self, controller: "SqlDomainController"):
        self.controller = controller
        self.counters = AllocationCounters()
        self._counter_lock = threading.Lock()

    def _count(self, name: str) -> None:
        with self._counter_lock:
            setattr(self.counters, name, getattr(self.counters, name) + 1)

    def _claim(self, connection: Connection, marker_class: type, object_id: int) -> bool:
        """Insert the marker row for one id within a savepoint."""
        marker = self.controller.instantiate(marker_class)
        if not self.controller.register_by_id(marker, object_id):
            logger.debug(f"{marker_class.__name__}@{object_id} is already registered - object is in use by this instance")
            self._count("in_use_by_same_instance")
            return False

        context = SaveContext(quiet=True)
        try:
            with connection.begin_nested():
                Saver(self.controller, connection, context).save(marker)
        except (SaveTransactionFailure, SQLAlchemyError):
            context.rollback()
            self.controller.unregister(marker)
            logger.debug(f"{marker_class.__name__}@{object_id} exists in database - object is in use by another instance")
            self._count("in_use_by_other_instance")
            return False

        context.commit(self.controller)
        self._count("successful")
        return True

    def _drop_markers(self, marker_class: type, ids: Iterable[int]) -> None:
        for object_id in ids:
            marker = self.controller.find(marker_class, object_id)
            if marker is not None:
                self.controller.unregister(marker)

    def _object_classes(self, domain_class: type) -> List[type]:
        return [c for c in self.controller.registry.object_domain_classes if issubclass(c, domain_class)]

    def allocate_exclusively(self, domain_class: Type[T], marker_class: type, where: Optional[str] = None,
                             max_count: int = 0, update: Optional[Update] = None) -> Set[T]:
        """
        Claim objects for exclusive work.

        Args:
            domain_class: Class of the objects to claim (may be abstract)
            marker_class: Domain class whose rows mark claimed objects
            where: Raw WHERE fragment selecting candidates
            max_count: Maximum number of candidates (0 for all)
            update: Optional change applied (and saved) to each claimed object

        Returns:
            The claimed objects, possibly empty
        """
        claimed: List[int] = []
        try:
            with self.controller.engine.begin() as connection:
                loader = Loader(self.controller, connection)
                for object_class in self._object_classes(domain_class):
                    remaining = max_count - len(claimed) if max_count > 0 else 0
                    if max_count > 0 and remaining <= 0:
                        break
                    candidates = loader.retrieve_records(object_class, where=where, max_count=remaining,
                                                         exclude_marked_by=marker_class, ids_only=True)
                    for object_id in candidates:
                        if self._claim(connection, marker_class, object_id):
                            claimed.append(object_id)
        except SQLAlchemyError:
            self._drop_markers(marker_class, claimed)
            raise

        if not claimed:
            logger.debug(f"No {domain_class.__name__} objects could be allocated")
            return set()

        allocated = self.controller.load_by_ids(domain_class, claimed)
        logger.info(f"Allocated {len(allocated)} {domain_class.__name__} objects exclusively")
        if update is not None:
            for obj in allocated:
                update(obj)
                self.controller.save(obj)
        return allocated

    def allocate_object_exclusively(self, obj: DomainObject, marker_class: type, update: Optional[Update] = None) -> bool:
        """
        Claim one registered object.

        Returns:
            True if the object was claimed (and still exists in the database)
        """
        try:
            with self.controller.engine.begin() as connection:
                claimed = self._claim(connection, marker_class, obj.id)
        except SQLAlchemyError:
            self._drop_markers(marker_class, [obj.id])
            raise
        if not claimed:
            return False

        if not self.controller.reload(obj):
            self.release_object(obj, marker_class)
            return False
        if update is not None:
            update(obj)
            self.controller.save(obj)
        return True

    def release_object(self, obj: DomainObject, marker_class: type, update: Optional[Update] = None) -> bool:
        """
        Release a claimed object, optionally applying and saving a final change first.

        Returns:
            False if the object was not claimed by this instance
        """
        marker = self.controller.find(marker_class, obj.id)
        if marker is None:
            logger.warning(f"{obj} is not allocated by this instance ({marker_class.__name__} not found)")
            return False
        try:
            if update is not None:
                update(obj)
                self.controller.save(obj)
        finally:
            self.controller.delete(marker)
        return True

    def release_objects(self, objects: Iterable[DomainObject], marker_class: type, update: Optional[Update] = None) -> int:
        return sum(1 for obj in list(objects) if self.release_object(obj, marker_class, update))

    def compute_exclusively_on_objects(self, domain_class: Type[T], marker_class: type, where: Optional[str],
                                       update: Update) -> Set[T]:
        """
        Claim objects, apply and save a change on each and release them again.

        The claims are released even if the change or the save raises.

        Returns:
            The objects which were changed
        """
        allocated = self.allocate_exclusively(domain_class, marker_class, where)
        try:
            for obj in allocated:
                update(obj)
                self.controller.save(obj)
        finally:
            self.release_objects(allocated, marker_class)
        return allocated
