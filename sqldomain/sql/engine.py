import logging
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url

logger = logging.getLogger(__name__)


def create_domain_engine(url: str, **kwargs: Any) -> Engine:
    """
    Create the SQLAlchemy engine used by a SqlDomainController.

    For SQLite the driver's own transaction handling is replaced by explicit
    ``BEGIN IMMEDIATE`` statements, so savepoints work and concurrent writers queue up
    on the busy timeout instead of failing on lock upgrades. Foreign keys are enabled
    on every connection.

    Args:
        url: Database URL
        **kwargs: Further arguments for ``sqlalchemy.create_engine``

    Returns:
        The engine
    """
    if make_url(url).get_backend_name() != "sqlite":
        return create_engine(url, **kwargs)

    connect_args = dict(kwargs.pop("connect_args", {}))
    connect_args.setdefault("check_same_thread", False)
    connect_args.setdefault("timeout", 30)
    engine = create_engine(url, connect_args=connect_args, **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    logger.debug(f"Created SQLite engine for {url}")
    return engine
