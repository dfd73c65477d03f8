"""
Tests for values stored as strings and table level constraints.

This test suite verifies that:
1. Types with a string converter, StoreAsString fields, pydantic value objects and
   nested collections survive a save/load round trip
2. In-place changes of nested collections are detected
3. Multi-column unique constraints and indexes are created and enforced
"""
import json
from decimal import Decimal
from typing import Annotated, Dict, List, Optional

import pytest
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import inspect, text

from sqldomain.annotations import StoreAsString
from sqldomain.converters import register_string_converter, unregister_string_converter
from sqldomain.domain.object import DomainObject
from sqldomain.domain.registry import FieldKind, Registry
from sqldomain.errors import RegistrationError, SaveTransactionFailure

pytestmark = pytest.mark.integration


class Money:
    def __init__(self, amount: Decimal, currency: str):
        self.amount = amount
        self.currency = currency

    @classmethod
    def parse(cls, text: str) -> "Money":
        amount, currency = text.split(" ")
        return cls(Decimal(amount), currency)

    def __eq__(self, other):
        return isinstance(other, Money) and (self.amount, self.currency) == (other.amount, other.currency)

    def __hash__(self):
        return hash((self.amount, self.currency))

    def __repr__(self):
        return f"Money({self.amount} {self.currency})"


class Sku:
    def __init__(self, code: str):
        self.code = code

    def __str__(self):
        return self.code

    def __eq__(self, other):
        return isinstance(other, Sku) and self.code == other.code

    def __hash__(self):
        return hash(self.code)


class Address(BaseModel):
    model_config = ConfigDict(frozen=True)

    street: str
    city: str


class Shipment(DomainObject):
    """Shipment with values stored as strings and a unique carrier/tracking pair."""
    __unique_constraints__ = [("carrier", "tracking")]
    __indexes__ = [("carrier", "status")]

    carrier: str = ""
    tracking: str = ""
    status: str = "NEW"
    price: Optional[Money] = None
    sku: Annotated[Optional[Sku], StoreAsString()] = None
    address: Optional[Address] = None
    stops: List[Address] = Field(default_factory=list)
    legs: List[List[int]] = Field(default_factory=list)
    prices: Dict[str, Money] = Field(default_factory=dict)


@pytest.fixture(autouse=True)
def money_converter():
    register_string_converter(Money, lambda m: f"{m.amount} {m.currency}", Money.parse)
    yield
    unregister_string_converter(Money)
    unregister_string_converter(Sku)


@pytest.fixture
def shipments(make_controller):
    def _make():
        return make_controller(classes=[Shipment])
    return _make


def stored_columns(controller, shipment_id: int) -> dict:
    with controller.engine.connect() as connection:
        return dict(connection.execute(
            text("SELECT price, sku, address FROM dom_shipment WHERE id = :id"), {"id": shipment_id}
        ).mappings().one())


class TestClassification:
    def test_value_types_are_data_fields(self):
        registry = Registry()
        registry.register_domain_classes(DomainObject, Shipment)
        for name in ["price", "sku", "address"]:
            assert registry.get_field(Shipment, name).kind is FieldKind.DATA
        assert registry.get_field(Shipment, "legs").element_type == List[int]
        assert registry.get_field(Shipment, "prices").value_type is Money

    def test_type_without_converter_is_rejected(self):
        class Plain:
            pass

        class Parcel(DomainObject):
            content: Optional[Plain] = None

        with pytest.raises(RegistrationError, match="cannot be persisted"):
            Registry().register_domain_classes(DomainObject, Parcel)

    def test_constraint_on_unknown_field_is_rejected(self):
        class Crate(DomainObject):
            __unique_constraints__ = [("label", "missing")]
            label: str = ""

        with pytest.raises(RegistrationError, match="__unique_constraints__"):
            Registry().register_domain_classes(DomainObject, Crate)


class TestStoredAsString:
    def test_round_trip(self, shipments):
        writer = shipments()
        shipment = writer.create(Shipment)
        shipment.price = Money(Decimal("12.50"), "EUR")
        shipment.sku = Sku("A-17")
        shipment.address = Address(street="Main 1", city="Berlin")
        shipment.stops = [Address(street="Dock 3", city="Hamburg"), Address(street="Main 1", city="Berlin")]
        shipment.legs = [[1, 2], [3]]
        shipment.prices = {"base": Money(Decimal("10"), "EUR"), "fee": Money(Decimal("2.50"), "EUR")}
        assert writer.save(shipment)

        stored = stored_columns(writer, shipment.id)
        assert stored["price"] == "12.50 EUR"
        assert stored["sku"] == "A-17"
        assert json.loads(stored["address"]) == {"street": "Main 1", "city": "Berlin"}

        reader = shipments()
        loaded = reader.load_by_ids(Shipment, [shipment.id]).pop()
        assert loaded.price == Money(Decimal("12.50"), "EUR")
        assert loaded.sku == Sku("A-17")
        assert loaded.address == Address(street="Main 1", city="Berlin")
        assert loaded.stops == shipment.stops
        assert loaded.legs == [[1, 2], [3]]
        assert loaded.prices == shipment.prices

    def test_unchanged_values_are_not_written(self, shipments):
        writer = shipments()
        shipment = writer.create_and_save(Shipment, lambda s: (
            setattr(s, "price", Money(Decimal("1.00"), "USD")),
            setattr(s, "address", Address(street="A", city="B")),
        ))
        shipment.price = Money(Decimal("1.00"), "USD")
        shipment.address = Address(street="A", city="B")
        assert not writer.save(shipment)

    def test_in_place_change_of_nested_collection(self, shipments):
        writer = shipments()
        shipment = writer.create_and_save(Shipment, lambda s: setattr(s, "legs", [[1, 2]]))
        shipment.legs[0].append(3)
        assert writer.save(shipment)

        loaded = shipments().load_by_ids(Shipment, [shipment.id]).pop()
        assert loaded.legs == [[1, 2, 3]]


class TestTableConstraints:
    def test_unique_constraint_and_index_are_created(self, shipments):
        controller = shipments()
        inspector = inspect(controller.engine)
        uniques = [sorted(c["column_names"]) for c in inspector.get_unique_constraints("dom_shipment")]
        assert ["carrier", "tracking"] in uniques
        indexes = {i["name"]: i["column_names"] for i in inspector.get_indexes("dom_shipment")}
        assert indexes["ix_dom_shipment_carrier_status"] == ["carrier", "status"]

    def test_unique_pair_is_enforced(self, shipments):
        controller = shipments()
        controller.create_and_save(Shipment, lambda s: (setattr(s, "carrier", "DHL"), setattr(s, "tracking", "1")))
        controller.create_and_save(Shipment, lambda s: (setattr(s, "carrier", "UPS"), setattr(s, "tracking", "1")))

        duplicate = controller.create(Shipment, lambda s: (setattr(s, "carrier", "DHL"), setattr(s, "tracking", "1")))
        assert controller.has_constraint_violations(duplicate)
        with pytest.raises(SaveTransactionFailure):
            controller.save(duplicate)
        assert not duplicate.is_stored
