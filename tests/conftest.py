"""Shared pytest fixtures – async SQLite files for the relational path, fakes for Cosmos DB."""

from __future__ import annotations

import asyncio
import sqlite3
import time
from typing import Any

import pytest
import pytest_asyncio
from azure.cosmos.exceptions import CosmosResourceNotFoundError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from datastore_mcp.backends.document import DocumentConnectionManager
from datastore_mcp.backends.relational import RelationalConnectionManager
from datastore_mcp.mcp.tools import ToolDispatcher

NUMBER_ROWS = 25  # rows seeded into dbo.Numbers


# ---------------------------------------------------------------------------
# Relational backend (SQLite with an attached "dbo" schema)
# ---------------------------------------------------------------------------


def _seed_dbo(path: str) -> None:
    with sqlite3.connect(path) as db:
        db.execute("CREATE TABLE Orders (id INTEGER PRIMARY KEY, customer_id INTEGER, total REAL)")
        db.execute("CREATE TABLE Customers (id INTEGER PRIMARY KEY, name TEXT)")
        db.execute("CREATE TABLE Numbers (id INTEGER PRIMARY KEY, label TEXT, payload BLOB)")
        db.executemany(
            "INSERT INTO Customers (id, name) VALUES (?, ?)",
            [(1, "Ada"), (2, "Grace")],
        )
        db.executemany(
            "INSERT INTO Orders (id, customer_id, total) VALUES (?, ?, ?)",
            [(1, 1, 10.5), (2, 2, 99.0)],
        )
        db.executemany(
            "INSERT INTO Numbers (id, label, payload) VALUES (?, ?, ?)",
            [(i, f"n{i}", bytes([i])) for i in range(1, NUMBER_ROWS + 1)],
        )


def _pause(seconds: float) -> float:
    time.sleep(seconds)
    return seconds


def attach_dbo_factory(dbo_path: str):
    """Engine factory that attaches *dbo_path* as schema ``dbo`` on every connection.

    Each connection also gets a ``pause(seconds)`` SQL function that blocks the
    driver thread, standing in for a long-running query.
    """

    def factory(url, **pool_options):
        engine = create_async_engine(url, poolclass=AsyncAdaptedQueuePool, **pool_options)

        @event.listens_for(engine.sync_engine, "connect")
        def _attach(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute(f"ATTACH DATABASE '{dbo_path}' AS dbo")
            cursor.close()
            dbapi_connection.create_function("pause", 1, _pause)

        return engine

    return factory


@pytest.fixture
def sqlite_files(tmp_path):
    main_path = tmp_path / "main.sqlite"
    dbo_path = tmp_path / "dbo.sqlite"
    sqlite3.connect(main_path).close()
    _seed_dbo(str(dbo_path))
    return str(main_path), str(dbo_path)


@pytest_asyncio.fixture
async def make_relational_manager(sqlite_files):
    """Factory for relational managers over the test files; all are closed at teardown."""
    main_path, dbo_path = sqlite_files
    managers: list[RelationalConnectionManager] = []

    def factory(**kwargs) -> RelationalConnectionManager:
        kwargs.setdefault("pool_size", 2)
        kwargs.setdefault("acquire_timeout", 2.0)
        kwargs.setdefault("backoff_seconds", 0.0)
        manager = RelationalConnectionManager(
            f"sqlite+aiosqlite:///{main_path}",
            engine_factory=attach_dbo_factory(dbo_path),
            **kwargs,
        )
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        await manager.aclose()


@pytest.fixture
def relational_manager(make_relational_manager):
    return make_relational_manager()


# ---------------------------------------------------------------------------
# Document backend fakes (shape of azure.cosmos.aio)
# ---------------------------------------------------------------------------


async def _aiter(items, error: Exception | None = None):
    if error is not None:
        raise error
    for item in items:
        yield item


def _not_found(what: str) -> CosmosResourceNotFoundError:
    return CosmosResourceNotFoundError(status_code=404, message=f"{what} does not exist")


class FakePageIterator:
    def __init__(self, pages: list[list[dict]], delay: float = 0.0) -> None:
        self._pages = pages
        self._delay = delay
        self._index = 0
        self.continuation_token: str | None = None
        self.pages_served = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._index >= len(self._pages):
            raise StopAsyncIteration
        page = self._pages[self._index]
        self._index += 1
        self.pages_served += 1
        self.continuation_token = f"token-{self._index}" if self._index < len(self._pages) else None
        return _aiter(page)


class FakeItemPager:
    def __init__(self, container: FakeContainer, items: list[dict], page_size: int) -> None:
        self._container = container
        self._items = items
        self._page_size = page_size

    def by_page(self, continuation_token: str | None = None):
        if self._container.missing:
            raise _not_found(f"Container {self._container.id}")
        pages = [
            self._items[i : i + self._page_size]
            for i in range(0, len(self._items), self._page_size)
        ]
        iterator = FakePageIterator(pages, delay=self._container.delay)
        self._container.iterators.append(iterator)
        return iterator


class FakeContainer:
    def __init__(
        self, container_id: str, items: list[dict] | None, delay: float = 0.0
    ) -> None:
        self.id = container_id
        self.items = items or []
        self.missing = items is None
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.iterators: list[FakePageIterator] = []

    def query_items(self, query: str, max_item_count: int | None = None, **kwargs):
        self.calls.append({"query": query, "max_item_count": max_item_count, **kwargs})
        items = self.items
        if kwargs.get("partition_key") is not None:
            items = [doc for doc in items if doc.get("pk") == kwargs["partition_key"]]
        return FakeItemPager(self, items, max_item_count or 100)


class FakeDatabase:
    def __init__(self, database_id: str, containers: dict[str, FakeContainer] | None) -> None:
        self.id = database_id
        self.containers = containers

    def list_containers(self):
        if self.containers is None:
            return _aiter([], _not_found(f"Database {self.id}"))
        return _aiter([{"id": name} for name in self.containers])

    def get_container_client(self, container: str) -> FakeContainer:
        if self.containers is None or container not in self.containers:
            return FakeContainer(container, None)
        return self.containers[container]


class FakeCosmosClient:
    """In-memory stand-in for ``azure.cosmos.aio.CosmosClient``.

    Missing databases and containers raise ``CosmosResourceNotFoundError``
    when iterated, the way the real async client does.
    """

    def __init__(self, databases: dict[str, dict[str, list[dict]]], delay: float = 0.0) -> None:
        self.databases = {
            db: FakeDatabase(
                db, {name: FakeContainer(name, docs, delay) for name, docs in cs.items()}
            )
            for db, cs in databases.items()
        }
        self.closed = False

    def list_databases(self):
        return _aiter([{"id": name} for name in self.databases])

    def get_database_client(self, database: str) -> FakeDatabase:
        return self.databases.get(database) or FakeDatabase(database, None)

    async def close(self) -> None:
        self.closed = True


def sample_documents(count: int = 5) -> list[dict]:
    return [
        {"id": str(i), "pk": "even" if i % 2 == 0 else "odd", "n": i, "tags": ["a", i]}
        for i in range(1, count + 1)
    ]


@pytest.fixture
def make_cosmos_client():
    def factory(delay: float = 0.0) -> FakeCosmosClient:
        return FakeCosmosClient(
            {
                "appdb": {"Items": sample_documents(5), "Empty": []},
                "logs": {},
            },
            delay=delay,
        )

    return factory


@pytest.fixture
def cosmos_client(make_cosmos_client):
    return make_cosmos_client()


@pytest_asyncio.fixture
async def document_manager(cosmos_client):
    manager = DocumentConnectionManager(
        "https://fake.documents.azure.com:443/",
        "fake-key",
        default_database="appdb",
        backoff_seconds=0.0,
        client_factory=lambda endpoint, key: cosmos_client,
    )
    yield manager
    await manager.aclose()


# ---------------------------------------------------------------------------
# Dispatcher over both test backends
# ---------------------------------------------------------------------------


@pytest.fixture
def dispatcher(relational_manager, document_manager):
    return ToolDispatcher(relational=relational_manager, document=document_manager)
