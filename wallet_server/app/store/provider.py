"""
Storage Providers
=================

Namespaced key-value stores used for durable server-side records.

Two providers implement the same interface:
- MemStoreProvider: process memory, for development and tests
- SQLStoreProvider: any SQLAlchemy database, one table for all namespaces

Stores raise RecordNotFoundError for a missing key and StorageError for
anything else, so callers can tell "first login" from "database down".
"""

import logging
import threading
from typing import Dict, Optional

from sqlalchemy import Column, LargeBinary, MetaData, String, Table, create_engine, delete, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from ..errors import RecordExistsError, RecordNotFoundError, StorageError

logger = logging.getLogger(__name__)


# =============================================================================
# Interface
# =============================================================================

class Store:
    """A single namespace of byte values keyed by string."""

    name: str

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def put(self, key: str, value: bytes) -> None:
        raise NotImplementedError

    def put_if_absent(self, key: str, value: bytes) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class StoreProvider:
    """Opens named stores. Opening the same name twice returns the same data."""

    def open_store(self, name: str) -> Store:
        raise NotImplementedError

    def close(self) -> None:
        pass


# =============================================================================
# In-Memory Provider
# =============================================================================

class MemStore(Store):
    def __init__(self, name: str):
        self.name = name
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._data[key]
            except KeyError:
                raise RecordNotFoundError(f"{self.name}: no record for key {key!r}") from None

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = value

    def put_if_absent(self, key: str, value: bytes) -> None:
        with self._lock:
            if key in self._data:
                raise RecordExistsError(f"{self.name}: record already exists for key {key!r}")
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class MemStoreProvider(StoreProvider):
    """Keeps every store in process memory. Data is lost on restart."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self._stores: Dict[str, MemStore] = {}
        self._lock = threading.Lock()

    def open_store(self, name: str) -> Store:
        full_name = f"{self.prefix}{name}"
        with self._lock:
            if full_name not in self._stores:
                self._stores[full_name] = MemStore(full_name)
            return self._stores[full_name]


# =============================================================================
# SQL Provider
# =============================================================================

metadata = MetaData()

records_table = Table(
    "wallet_records",
    metadata,
    Column("namespace", String(128), primary_key=True),
    Column("key", String(255), primary_key=True),
    Column("value", LargeBinary, nullable=False),
)


class SQLStore(Store):
    def __init__(self, engine: Engine, name: str):
        self.name = name
        self._engine = engine

    def _where(self, key: str):
        return (records_table.c.namespace == self.name) & (records_table.c.key == key)

    def get(self, key: str) -> bytes:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(select(records_table.c.value).where(self._where(key))).first()
        except SQLAlchemyError as e:
            raise StorageError(f"{self.name}: failed to read key {key!r}: {e}") from e

        if row is None:
            raise RecordNotFoundError(f"{self.name}: no record for key {key!r}")
        return row[0]

    def put(self, key: str, value: bytes) -> None:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(update(records_table).where(self._where(key)).values(value=value))
                if result.rowcount == 0:
                    conn.execute(insert(records_table).values(namespace=self.name, key=key, value=value))
        except SQLAlchemyError as e:
            raise StorageError(f"{self.name}: failed to write key {key!r}: {e}") from e

    def put_if_absent(self, key: str, value: bytes) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(records_table).values(namespace=self.name, key=key, value=value))
        except IntegrityError as e:
            raise RecordExistsError(f"{self.name}: record already exists for key {key!r}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"{self.name}: failed to write key {key!r}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(delete(records_table).where(self._where(key)))
        except SQLAlchemyError as e:
            raise StorageError(f"{self.name}: failed to delete key {key!r}: {e}") from e


class SQLStoreProvider(StoreProvider):
    """
    Stores every namespace in one SQLAlchemy table.

    Args:
        url: SQLAlchemy database URL, e.g. "postgresql+psycopg://..." or "sqlite:///wallet.db"
        prefix: Prefix applied to every namespace name
        engine: Pre-built engine (overrides url)
    """

    def __init__(self, url: Optional[str] = None, prefix: str = "", engine: Optional[Engine] = None):
        if engine is None:
            if not url:
                raise StorageError("SQL store provider requires a database URL")
            engine = _create_engine(url)

        self.prefix = prefix
        self._engine = engine

        try:
            metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to initialize storage tables: {e}") from e

        logger.info(
            "Opened SQL store provider",
            extra={"dialect": self._engine.dialect.name},
        )

    def open_store(self, name: str) -> Store:
        return SQLStore(self._engine, f"{self.prefix}{name}")

    def close(self) -> None:
        self._engine.dispose()


def _create_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def create_store_provider(database_url: Optional[str], prefix: str = "") -> StoreProvider:
    """
    Pick the storage provider for the configured database URL.

    Args:
        database_url: SQLAlchemy URL, or None for in-memory storage
        prefix: Namespace prefix

    Returns:
        Ready-to-use store provider
    """
    if not database_url:
        return MemStoreProvider(prefix=prefix)
    return SQLStoreProvider(url=database_url, prefix=prefix)
