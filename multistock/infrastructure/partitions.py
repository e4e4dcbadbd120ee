"""
Partition provisioning.

A partition is one tenant's private copy of every table in
``PartitionBase.metadata``. On PostgreSQL it is a schema; on SQLite (local runs
and the test suite) it is an attached database. Callers only ever hand in a
``PartitionHandle``; identifiers reach SQL through the dialect's quoting or
SQLAlchemy's schema_translate_map.
"""

import os
import zlib
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session
from sqlalchemy.schema import CreateSchema, DropSchema

from multistock.core.logging_config import get_logger
from multistock.domain.models import PARTITION_SCHEMA, Client, PartitionBase, Product
from multistock.domain.partition import PartitionHandle
from .db import partition_session, transaction

logger = get_logger(__name__)

PARTITION_TABLES = tuple(t.name for t in PartitionBase.metadata.sorted_tables)


def _translated(connection: Connection, partition: PartitionHandle) -> Connection:
    return connection.execution_options(schema_translate_map={PARTITION_SCHEMA: partition.name})


class _PostgresBackend:
    def lock(self, connection: Connection, partition: PartitionHandle) -> None:
        # Transaction-scoped advisory lock serialises provision/drop of one partition.
        key = zlib.crc32(partition.name.encode()) & 0x7FFFFFFF
        connection.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})

    def create_container(self, connection: Connection, partition: PartitionHandle) -> None:
        connection.execute(CreateSchema(partition.name, if_not_exists=True))

    def drop_container(self, connection: Connection, partition: PartitionHandle) -> None:
        # CASCADE takes ACCESS EXCLUSIVE on every table, so it waits for in-flight
        # ledger transactions and fails with lock_timeout instead of racing them.
        connection.execute(DropSchema(partition.name, cascade=True, if_exists=True))

    def has_container(self, connection: Connection, partition: PartitionHandle) -> bool:
        return inspect(connection).has_schema(partition.name)


class _SqliteBackend:
    def _attached(self, connection: Connection) -> set:
        return {row[1] for row in connection.exec_driver_sql("PRAGMA database_list")}

    def _path(self, connection: Connection, partition: PartitionHandle) -> str:
        database = connection.engine.url.database
        if not database or database == ":memory:":
            return ":memory:"
        return os.path.join(os.path.dirname(os.path.abspath(database)), f"{partition.name}.db")

    def lock(self, connection: Connection, partition: PartitionHandle) -> None:
        pass

    def create_container(self, connection: Connection, partition: PartitionHandle) -> None:
        if partition.name in self._attached(connection):
            return
        quoted = connection.dialect.identifier_preparer.quote(partition.name)
        connection.exec_driver_sql(f"ATTACH DATABASE ? AS {quoted}", (self._path(connection, partition),))

    def drop_container(self, connection: Connection, partition: PartitionHandle) -> None:
        if partition.name not in self._attached(connection):
            return
        path = self._path(connection, partition)
        quoted = connection.dialect.identifier_preparer.quote(partition.name)
        connection.exec_driver_sql(f"DETACH DATABASE {quoted}")
        if path != ":memory:" and os.path.exists(path):
            os.remove(path)

    def has_container(self, connection: Connection, partition: PartitionHandle) -> bool:
        return partition.name in self._attached(connection)


class PartitionProvisioner:
    """Creates, inspects, seeds and drops tenant partitions."""

    def __init__(self, bind: Engine):
        self.bind = bind
        if bind.dialect.name == "postgresql":
            self._backend = _PostgresBackend()
        elif bind.dialect.name == "sqlite":
            self._backend = _SqliteBackend()
        else:
            raise ValueError(f"Unsupported dialect for partitions: {bind.dialect.name}")

    def provision(self, partition: PartitionHandle, connection: Optional[Connection] = None) -> None:
        """Create the partition schema, tables and indexes. Re-running is a no-op."""
        if connection is None:
            with self.bind.begin() as conn:
                self._provision(conn, partition)
        else:
            self._provision(connection, partition)

    def _provision(self, connection: Connection, partition: PartitionHandle) -> None:
        self._backend.lock(connection, partition)
        self._backend.create_container(connection, partition)
        PartitionBase.metadata.create_all(_translated(connection, partition), checkfirst=True)
        logger.info(f"Partition provisioned: {partition.name}")

    def exists(self, partition: PartitionHandle, connection: Optional[Connection] = None) -> bool:
        if connection is None:
            with self.bind.connect() as conn:
                return self._exists(conn, partition)
        return self._exists(connection, partition)

    def _exists(self, connection: Connection, partition: PartitionHandle) -> bool:
        if not self._backend.has_container(connection, partition):
            return False
        present = set(inspect(connection).get_table_names(schema=partition.name))
        return set(PARTITION_TABLES) <= present

    def drop(self, partition: PartitionHandle, connection: Connection) -> None:
        """Irreversibly destroy a partition.

        Requires the caller's connection so the drop commits or rolls back with
        the registry change; TenantRegistry.delete is the only caller.
        """
        self._backend.lock(connection, partition)
        self._backend.drop_container(connection, partition)
        logger.warning(f"Partition dropped: {partition.name}")

    def seed(
        self,
        partition: PartitionHandle,
        initial_records: Dict[str, Any],
        connection: Optional[Connection] = None,
    ) -> Dict[str, int]:
        """Load starter products/clients. Joins ``connection``'s transaction if given."""
        if connection is not None:
            session = Session(bind=_translated(connection, partition), autoflush=False)
            try:
                counts = self._seed(session, initial_records)
                session.flush()
            finally:
                session.close()
            return counts

        session = partition_session(self.bind, partition)
        try:
            with transaction(session):
                counts = self._seed(session, initial_records)
        finally:
            session.close()
        return counts

    def _seed(self, session: Session, initial_records: Dict[str, Any]) -> Dict[str, int]:
        products = initial_records.get("products") or []
        clients = initial_records.get("clients") or []
        for p in products:
            stock = int(p.get("current_stock") or 0)
            session.add(Product(
                sku=p["sku"],
                name=p["name"],
                category=p.get("category"),
                brand=p.get("brand"),
                cost_price=Decimal(str(p.get("cost_price") or 0)),
                selling_price=Decimal(str(p["selling_price"])),
                opening_stock=stock,
                current_stock=stock,
                min_stock_threshold=p.get("min_stock_threshold") or 10,
                max_stock_threshold=p.get("max_stock_threshold") or 1000,
                active=p.get("active", True) is not False,
            ))
        for c in clients:
            session.add(Client(
                client_code=c["client_code"],
                business_name=c["business_name"],
                contact_person=c.get("contact_person"),
                email=c.get("email"),
                phone=c.get("phone"),
                address=c.get("address"),
                city=c.get("city"),
                state=c.get("state"),
                client_type=c.get("client_type") or "wholesale",
                credit_limit=Decimal(str(c.get("credit_limit") or 0)),
                payment_terms=c.get("payment_terms") or 30,
                active=c.get("active", True) is not False,
            ))
        logger.info(f"Seeded partition: {len(products)} products, {len(clients)} clients")
        return {"products": len(products), "clients": len(clients)}
