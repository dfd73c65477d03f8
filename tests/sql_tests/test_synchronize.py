"""
Tests for synchronization with the database: data horizon, referential integrity
closure, eviction and change detection between instances.
"""
from datetime import timedelta

import pytest
from sqlalchemy import update

from sqldomain.common import utcnow
from conftest import Book, Customer, Folder, Document, Order, OrderLine

pytestmark = pytest.mark.integration


def backdate(controller, obj, days: int) -> None:
    """Move the last modification of an object's row into the past."""
    table = controller.registry.get_table_for(controller.registry.get_base_domain_class(type(obj)))
    with controller.engine.begin() as connection:
        connection.execute(
            update(table).where(table.c.id == obj.id).values(last_modified=utcnow() - timedelta(days=days))
        )


@pytest.fixture
def horizon_data(make_controller):
    """Customer with an old and a recent order plus an old order kept alive by an order line."""
    writer = make_controller(horizon="1d")
    customer = writer.create_and_save(Customer, lambda c: setattr(c, "name", "C"))
    old = writer.create_and_save(Order, lambda o: (setattr(o, "customer", customer), setattr(o, "status", "OLD")))
    recent = writer.create_and_save(Order, lambda o: setattr(o, "customer", customer))
    referenced = writer.create_and_save(Order, lambda o: setattr(o, "status", "REFERENCED"))
    line = writer.create_and_save(OrderLine, lambda l: setattr(l, "order", referenced))
    backdate(writer, old, 10)
    backdate(writer, referenced, 10)
    return writer, {"customer": customer, "old": old, "recent": recent, "referenced": referenced, "line": line}


class TestDataHorizon:
    def test_old_objects_are_not_loaded(self, make_controller, horizon_data):
        _, data = horizon_data
        reader = make_controller(horizon="1d")
        assert reader.synchronize()

        assert reader.find(Order, data["old"].id) is None
        assert reader.find(Order, data["recent"].id) is not None
        assert {o.id for o in reader.get(Customer, data["customer"].id).orders} == {data["recent"].id}

    def test_referenced_old_objects_are_loaded(self, make_controller, horizon_data):
        _, data = horizon_data
        reader = make_controller(horizon="1d")
        reader.synchronize()

        line = reader.get(OrderLine, data["line"].id)
        assert line.order is not None
        assert line.order.id == data["referenced"].id
        assert line.order.status == "REFERENCED"

    def test_objects_outside_horizon_are_evicted(self, horizon_data):
        writer, data = horizon_data
        assert writer.is_registered(data["old"])

        assert writer.synchronize()
        assert not writer.is_registered(data["old"])
        assert writer.is_registered(data["referenced"])
        assert data["customer"].orders == {data["recent"]}

    def test_evicted_parent_is_reattached_on_save(self, horizon_data):
        writer, data = horizon_data
        writer.synchronize()
        old = data["old"]
        assert not writer.is_registered(old)

        line = writer.create(OrderLine, lambda l: setattr(l, "order", old))
        writer.save(line)
        assert writer.is_registered(old)
        assert line.is_stored

    def test_reattached_parent_survives_next_synchronize(self, make_controller, horizon_data):
        writer, data = horizon_data
        writer.synchronize()
        old = data["old"]
        line = writer.create(OrderLine, lambda l: setattr(l, "order", old))
        writer.save(line)

        writer.synchronize()
        assert writer.is_registered(old)
        assert line.order is old
        assert old.lines == {line}

        reader = make_controller(horizon="1d")
        reader.synchronize()
        assert reader.get(OrderLine, line.id).order.id == old.id

    def test_longer_horizon_loads_everything(self, make_controller, horizon_data):
        _, data = horizon_data
        reader = make_controller(horizon="1M")
        reader.synchronize()
        assert reader.count(Order) == 3


class TestSynchronization:
    def test_second_synchronize_is_idempotent(self, make_controller, horizon_data):
        reader = make_controller(horizon="1d")
        assert reader.synchronize()
        first = reader.find_all_objects()

        assert not reader.synchronize()
        assert reader.find_all_objects() == first

    def test_changes_of_other_instance_are_detected(self, make_controller):
        writer = make_controller()
        order = writer.create_and_save(Order)
        reader = make_controller()
        reader.synchronize()
        assert not reader.synchronize()

        order.status = "SHIPPED"
        writer.save(order)
        assert reader.synchronize()
        assert reader.get(Order, order.id).status == "SHIPPED"

    def test_deletion_by_other_instance_evicts(self, make_controller):
        writer = make_controller()
        order = writer.create_and_save(Order)
        reader = make_controller()
        reader.synchronize()

        writer.delete(order)
        assert reader.synchronize()
        assert reader.find(Order, order.id) is None

    def test_unsaved_objects_are_saved_first(self, sdc):
        folder = sdc.create(Folder)
        document = sdc.create(Document, lambda d: setattr(d, "folder", folder))
        sdc.synchronize()
        assert folder.is_stored and document.is_stored
        assert folder.documents == {document}

    def test_excluded_classes_are_not_loaded(self, make_controller):
        writer = make_controller()
        book = writer.create_and_save(Book, lambda b: setattr(b, "name", "Dune"))
        customer = writer.create_and_save(Customer)

        reader = make_controller()
        reader.synchronize(Book)
        assert reader.find(Book, book.id) is None
        assert reader.find(Customer, customer.id) is not None

    def test_references_are_complete_after_synchronize(self, make_controller, horizon_data):
        reader = make_controller(horizon="1d")
        reader.synchronize()
        for obj in reader.find_all_objects():
            for ref_field in reader.registry.get_all_reference_fields(type(obj)):
                parent = ref_field.get(obj)
                if parent is not None:
                    assert reader.is_registered(parent)

    def test_reference_changed_by_other_instance_moves_accumulation(self, make_controller):
        writer = make_controller()
        first = writer.create_and_save(Customer, lambda c: setattr(c, "name", "first"))
        second = writer.create_and_save(Customer, lambda c: setattr(c, "name", "second"))
        order = writer.create_and_save(Order, lambda o: setattr(o, "customer", first))

        reader = make_controller()
        reader.synchronize()
        assert len(reader.get(Customer, first.id).orders) == 1

        order.customer = second
        writer.save(order)
        reader.synchronize()
        assert reader.get(Customer, first.id).orders == set()
        assert {o.id for o in reader.get(Customer, second.id).orders} == {order.id}
