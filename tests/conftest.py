"""
Common fixtures and setup for sqldomain tests.
Provides a small domain model and controllers working on SQLite files in tmp_path.
"""
import enum
import logging
from typing import Annotated, Callable, Dict, List, Optional, Set

import pytest
from pydantic import Field

from sqldomain.annotations import Accumulation, Column, Crypt, Removed, Secret
from sqldomain.config import DomainConfig
from sqldomain.domain.object import DomainObject
from sqldomain.sql.controller import SqlDomainController

logging.basicConfig(level=logging.INFO)


# Custom test markers
def pytest_configure(config):
    """Configure custom markers."""
    markers = [
        "slow: marks tests as slow",
        "integration: marks tests running against a database",
    ]
    for marker in markers:
        config.addinivalue_line("markers", marker)


# ========================================================================
# Test domain classes
# ========================================================================

class Color(enum.Enum):
    RED = 1
    GREEN = 2
    BLUE = 3


class Customer(DomainObject):
    """Customer with a unique email, a secret password and the accumulation of its orders."""
    name: str = ""
    email: Annotated[Optional[str], Column(unique=True)] = None
    password: Annotated[Optional[str], Secret(), Crypt()] = None
    fax: Annotated[Optional[str], Removed("1.2")] = None
    orders: Annotated[Set["Order"], Accumulation()] = Field(default_factory=set)


class Order(DomainObject):
    """Data horizon controlled order with complex fields."""
    __data_horizon__ = True

    customer: Optional[Customer] = None
    status: str = "NEW"
    amount: float = 0.0
    color: Optional[Color] = None
    comment: Annotated[Optional[str], Column(size=20)] = None
    tags: List[str] = Field(default_factory=list)
    labels: Set[str] = Field(default_factory=set)
    notes: Dict[str, int] = Field(default_factory=dict)
    lines: Annotated[Set["OrderLine"], Accumulation()] = Field(default_factory=set)

    class InProgress(DomainObject):
        """Marker of orders allocated for processing."""


class Item(DomainObject):
    """Abstract base of sold items."""
    __abstract__ = True

    name: str = ""


class Book(Item):
    isbn: str = ""


class Gadget(Item):
    voltage: int = 0


class OrderLine(DomainObject):
    order: Order = None
    item: Optional[Item] = None
    quantity: int = 1


class Alpha(DomainObject):
    name: str = ""
    beta: Optional["Beta"] = None


class Beta(DomainObject):
    name: str = ""
    alpha: Optional[Alpha] = None


class Node(DomainObject):
    name: str = ""
    partner: Optional["Node"] = None


class Folder(DomainObject):
    name: str = ""
    documents: Annotated[Set["Document"], Accumulation()] = Field(default_factory=set)


class Document(DomainObject):
    """Document which refuses deletion while locked."""
    title: str = ""
    locked: bool = False
    code: Annotated[Optional[str], Column(unique=True)] = None
    folder: Optional[Folder] = None

    def can_be_deleted(self) -> bool:
        return not self.locked


ALL_CLASSES = [Customer, Order, Book, Gadget, OrderLine, Alpha, Beta, Node, Folder, Document]


class ReverseCrypter:
    """Reversible test crypter."""

    def encrypt(self, value: str, password: str, salt: str) -> str:
        return f"{password}:{value[::-1]}"

    def decrypt(self, value: str, password: str, salt: str) -> str:
        return value.split(":", 1)[1][::-1]


# ========================================================================
# Fixtures
# ========================================================================

@pytest.fixture
def database_url(tmp_path) -> str:
    """URL of a fresh SQLite database file."""
    return f"sqlite:///{tmp_path / 'sqldomain_test.db'}"


@pytest.fixture
def make_controller(database_url) -> Callable[..., SqlDomainController]:
    """Factory for initialized controllers sharing one database (each one simulates an instance)."""
    controllers: List[SqlDomainController] = []

    def _make(horizon: str = "1M", crypter=None, password: Optional[str] = None,
              classes: Optional[list] = None, create_tables: bool = True) -> SqlDomainController:
        config = DomainConfig(database_url=database_url, data_horizon_period=horizon, crypt_password=password)
        controller = SqlDomainController(config, crypter=crypter)
        controller.initialize(DomainObject, *(classes or ALL_CLASSES), create_tables=create_tables)
        controllers.append(controller)
        return controller

    yield _make

    for controller in controllers:
        controller.close()


@pytest.fixture
def sdc(make_controller) -> SqlDomainController:
    """Initialized controller on a fresh database."""
    return make_controller()
