"""
Tests for saving objects and loading them in a fresh store.

This test suite verifies that:
1. Field values survive a save/load round trip (complex fields included)
2. Only changed fields are written and snapshots follow the saved state
3. Unsaved parents and circular references between new objects are handled
4. Failing INSERTs roll back, failing UPDATEs are retried column by column
"""
import logging

import pytest
from sqlalchemy import select, text

from sqldomain.domain.field_error import CONTENT_TRUNCATED_IN_DATABASE, UNIQUE_CONSTRAINT_VIOLATION
from sqldomain.errors import SaveTransactionFailure
from conftest import Alpha, Beta, Book, Color, Customer, Document, Folder, Node, Order, OrderLine, ReverseCrypter

logger = logging.getLogger("test_load_and_save")

pytestmark = pytest.mark.integration


def fresh_copy(make_controller, domain_class, object_id, **kwargs):
    """Load one object by id in a new controller."""
    controller = make_controller(**kwargs)
    loaded = controller.load_by_ids(domain_class, [object_id])
    assert len(loaded) == 1
    return controller, loaded.pop()


class TestRoundTrip:
    def test_data_reference_and_complex_fields(self, sdc, make_controller):
        customer = sdc.create(Customer, lambda c: setattr(c, "name", "Ada"))
        order = sdc.create(Order)
        order.customer = customer
        order.amount = 12.5
        order.color = Color.GREEN
        order.tags = ["urgent", "gift", "urgent"]
        order.labels = {"a", "b"}
        order.notes = {"x": 1, "y": 2}
        assert sdc.save(order)
        assert order.is_stored and customer.is_stored

        other, loaded = fresh_copy(make_controller, Order, order.id)
        assert loaded is not order
        assert loaded.amount == 12.5
        assert loaded.color is Color.GREEN
        assert loaded.tags == ["urgent", "gift", "urgent"]
        assert loaded.labels == {"a", "b"}
        assert loaded.notes == {"x": 1, "y": 2}
        assert loaded.customer.id == customer.id
        assert loaded.customer.name == "Ada"
        assert other.find(Customer, customer.id).orders == {loaded}

    def test_changed_complex_fields(self, sdc, make_controller):
        order = sdc.create(Order)
        order.tags = ["a", "b", "c"]
        order.labels = {"x", "y"}
        order.notes = {"k1": 1, "k2": 2}
        sdc.save(order)

        order.tags = ["c", "a"]
        order.labels = {"y", "z"}
        order.notes = {"k2": 20, "k3": 3}
        assert sdc.save(order)

        _, loaded = fresh_copy(make_controller, Order, order.id)
        assert loaded.tags == ["c", "a"]
        assert loaded.labels == {"y", "z"}
        assert loaded.notes == {"k2": 20, "k3": 3}

    def test_inherited_fields_and_abstract_reference(self, sdc, make_controller):
        book = sdc.create(Book, lambda b: (setattr(b, "name", "Dune"), setattr(b, "isbn", "978-0")))
        order = sdc.create(Order)
        line = sdc.create(OrderLine, lambda l: (setattr(l, "order", order), setattr(l, "item", book)))
        sdc.save(line)

        other, loaded = fresh_copy(make_controller, OrderLine, line.id)
        assert isinstance(loaded.item, Book)
        assert (loaded.item.name, loaded.item.isbn) == ("Dune", "978-0")
        assert other.find(Order, order.id).lines == {loaded}

    def test_load_only_with_where_clause(self, sdc, make_controller):
        for status in ["NEW", "NEW", "DONE"]:
            sdc.create_and_save(Order, lambda o, s=status: setattr(o, "status", s))

        other = make_controller()
        loaded = other.load_only(Order, "dom_order.status = 'NEW'")
        assert len(loaded) == 2
        assert other.count(Order) == 2
        assert len(other.load_only(Order, max_count=1)) == 1


class TestChangeDetection:
    def test_unchanged_object_is_not_written(self, sdc):
        order = sdc.create_and_save(Order)
        stamp = order.last_modified
        assert not sdc.save(order)
        assert order.last_modified == stamp

    def test_change_bumps_last_modified(self, sdc):
        order = sdc.create_and_save(Order)
        stamp = order.last_modified
        order.status = "DONE"
        assert sdc.save(order)
        assert order.last_modified > stamp

    def test_tolerant_equality(self, sdc):
        order = sdc.create_and_save(Order, lambda o: setattr(o, "amount", 0.3))
        order.amount = 0.1 + 0.2
        order.tags = []
        assert not sdc.save(order)

    def test_reload_brings_database_changes(self, sdc):
        order = sdc.create_and_save(Order)
        with sdc.engine.begin() as connection:
            connection.execute(text("UPDATE dom_order SET status = 'SHIPPED' WHERE id = :id"), {"id": order.id})
        assert sdc.reload(order)
        assert order.status == "SHIPPED"

    def test_reload_of_deleted_row_unregisters(self, sdc):
        order = sdc.create_and_save(Order)
        with sdc.engine.begin() as connection:
            connection.execute(text("DELETE FROM dom_order WHERE id = :id"), {"id": order.id})
        assert not sdc.reload(order)
        assert not sdc.is_registered(order)

    def test_update_of_row_deleted_elsewhere_unregisters(self, sdc):
        order = sdc.create_and_save(Order)
        with sdc.engine.begin() as connection:
            connection.execute(text("DELETE FROM dom_order WHERE id = :id"), {"id": order.id})
        order.status = "DONE"
        assert not sdc.save(order)
        assert not sdc.is_registered(order)


class TestParents:
    def test_scenario_a_parent_and_child(self, sdc, make_controller):
        parent = sdc.create_and_save(Customer, lambda c: setattr(c, "name", "P"))
        child = sdc.create(Order, lambda o: setattr(o, "customer", parent))
        sdc.save(child)

        other = make_controller()
        other.synchronize()
        loaded_child = other.get(Order, child.id)
        assert loaded_child.customer.id == parent.id
        assert {o.id for o in other.get(Customer, parent.id).orders} == {child.id}

    def test_mandatory_parent_is_saved_first(self, sdc):
        order = sdc.create(Order)
        line = sdc.create(OrderLine, lambda l: setattr(l, "order", order))
        sdc.save(line)
        assert order.is_stored
        with sdc.engine.connect() as connection:
            stored = connection.execute(text("SELECT order_id FROM dom_order_line WHERE id = :id"), {"id": line.id}).scalar()
        assert stored == order.id

    def test_scenario_c_mutual_nullable_references(self, sdc, make_controller):
        alpha = sdc.create(Alpha, lambda a: setattr(a, "name", "A"))
        beta = sdc.create(Beta, lambda b: setattr(b, "name", "B"))
        alpha.beta = beta
        beta.alpha = alpha

        assert sdc.save(alpha)
        assert alpha.is_stored and beta.is_stored
        assert alpha.beta is beta and beta.alpha is alpha

        other = make_controller()
        other.synchronize()
        loaded_alpha = other.get(Alpha, alpha.id)
        assert loaded_alpha.beta.id == beta.id
        assert loaded_alpha.beta.alpha is loaded_alpha

    def test_self_reference_cycle(self, sdc, make_controller):
        first = sdc.create(Node, lambda n: setattr(n, "name", "first"))
        second = sdc.create(Node, lambda n: (setattr(n, "name", "second"), setattr(n, "partner", first)))
        first.partner = second
        sdc.save(first)

        other = make_controller()
        other.synchronize()
        assert other.get(Node, first.id).partner is other.get(Node, second.id)
        assert other.get(Node, second.id).partner is other.get(Node, first.id)


class TestFailures:
    def test_truncation_warning(self, sdc, make_controller):
        order = sdc.create(Order, lambda o: setattr(o, "comment", "x" * 30))
        sdc.save(order)
        assert order.comment == "x" * 20
        assert order.get_field_error("comment").message == CONTENT_TRUNCATED_IN_DATABASE
        assert order.is_valid()

        _, loaded = fresh_copy(make_controller, Order, order.id)
        assert loaded.comment == "x" * 20

    def test_failing_insert_rolls_back(self, sdc):
        sdc.create_and_save(Customer, lambda c: setattr(c, "email", "a@example.com"))
        duplicate = sdc.create(Customer, lambda c: setattr(c, "email", "a@example.com"))

        with pytest.raises(SaveTransactionFailure) as exc_info:
            sdc.save(duplicate)
        assert exc_info.value.__cause__ is not None
        assert not duplicate.is_stored
        assert sdc.is_registered(duplicate)
        assert UNIQUE_CONSTRAINT_VIOLATION in duplicate.get_field_error("email").message
        assert not sdc.all_valid(Customer)
        assert duplicate.current_exception is not None

    def test_failing_insert_restores_detached_reference(self, sdc):
        alpha = sdc.create(Alpha)
        beta = sdc.create(Beta)
        alpha.beta = beta
        beta.alpha = alpha
        # Make the second INSERT fail by occupying the id of beta
        with sdc.engine.begin() as connection:
            connection.execute(
                text("INSERT INTO dom_beta (id, domain_class, last_modified, name) VALUES (:id, 'Beta', '2020-01-01 00:00:00', '')"),
                {"id": beta.id},
            )
        with pytest.raises(SaveTransactionFailure):
            sdc.save(alpha)
        assert not alpha.is_stored and not beta.is_stored
        assert alpha.beta is beta

    def test_analytic_update(self, sdc, make_controller):
        sdc.create_and_save(Customer, lambda c: setattr(c, "email", "a@example.com"))
        customer = sdc.create_and_save(Customer, lambda c: setattr(c, "email", "b@example.com"))

        customer.name = "changed"
        customer.email = "a@example.com"
        assert sdc.save(customer)
        assert not customer.is_valid()
        assert "email" in customer.get_invalid_fields()
        assert customer.email == "b@example.com"

        _, loaded = fresh_copy(make_controller, Customer, customer.id)
        assert loaded.name == "changed"
        assert loaded.email == "b@example.com"

    def test_stale_copy_is_not_saved(self, sdc):
        order = sdc.create_and_save(Order)
        original_id = order.id
        sdc.unregister(order)
        fresh = sdc.load_by_ids(Order, [original_id]).pop()
        assert fresh is not order

        order.status = "STALE"
        with pytest.raises(SaveTransactionFailure):
            sdc.save(order)
        assert order.id == original_id
        assert not sdc.is_registered(order)
        assert sdc.find(Order, original_id) is fresh

        fresh.status = "FRESH"
        assert sdc.save(fresh)

    def test_analytic_update_keeps_restored_reference_in_accumulation(self, sdc):
        sdc.create_and_save(Document, lambda d: setattr(d, "code", "D-1"))
        document = sdc.create_and_save(Document, lambda d: setattr(d, "code", "D-2"))
        folder = sdc.create(Folder)

        document.folder = folder
        document.code = "D-1"
        assert sdc.save(document)
        assert "code" in document.get_invalid_fields()
        assert document.code == "D-2"
        assert folder.is_stored
        assert document.folder is folder
        assert folder.documents == {document}

    def test_constraint_violations_in_heap(self, sdc):
        line = sdc.create(OrderLine)
        assert sdc.has_constraint_violations(line)
        assert "order" in line.get_invalid_fields()


class TestEncryption:
    def test_crypt_field_is_encrypted(self, make_controller):
        sdc = make_controller(crypter=ReverseCrypter(), password="pw")
        customer = sdc.create_and_save(Customer, lambda c: setattr(c, "password", "secret"))

        with sdc.engine.connect() as connection:
            stored = connection.execute(text("SELECT sec_password FROM dom_customer WHERE id = :id"), {"id": customer.id}).scalar()
        assert stored == "pw:terces"

        other = make_controller(crypter=ReverseCrypter(), password="pw")
        assert other.load_by_ids(Customer, [customer.id]).pop().password == "secret"

    def test_without_crypter_values_are_plain(self, make_controller, caplog):
        sdc = make_controller()
        assert "stored unencrypted" in caplog.text
        customer = sdc.create_and_save(Customer, lambda c: setattr(c, "password", "secret"))
        table = sdc.registry.get_table_for(Customer)
        with sdc.engine.connect() as connection:
            stored = connection.execute(select(table.c.sec_password).where(table.c.id == customer.id)).scalar()
        assert stored == "secret"

    def test_secret_values_are_masked_in_logs(self, make_controller, caplog):
        sdc = make_controller()
        customer = sdc.create_and_save(Customer, lambda c: setattr(c, "password", "topsecret"))
        with sdc.engine.begin() as connection:
            connection.execute(text("UPDATE dom_customer SET sec_password = 'changed-db' WHERE id = :id"), {"id": customer.id})
        customer.password = "local-edit"
        caplog.clear()
        with caplog.at_level(logging.DEBUG, logger="sqldomain"):
            sdc.reload(customer)
        assert "overwritten" in caplog.text
        assert "local-edit" not in caplog.text
        assert "changed-db" not in caplog.text
