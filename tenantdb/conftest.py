"""
Shared test fakes.

FakeAdapter is an in-memory adapter that records every storage call.
FakePool and FakeMotorClient stand in for asyncpg pools and motor clients
so the real adapters can be exercised without a server.
"""

import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Set
from unittest.mock import AsyncMock
from urllib.parse import urlsplit

import pytest
from pymongo.errors import CollectionInvalid
from pymongo.errors import ConfigurationError as MongoConfigurationError

from tenantdb.database.base import (
    AdapterType,
    BaseAdapter,
    DatabaseConfig,
    TenantAlreadyExistsError,
)
from tenantdb.database.factory import create_db


class FakeClient:
    def __init__(self, url: str):
        self.url = url
        self.closed = False


class FakeScopedClient:
    """Row-scoped view over the FakeAdapter's table store."""

    def __init__(self, base: FakeClient, tenant_id: str, adapter: "FakeAdapter"):
        self.base = base
        self.tenant_id = tenant_id
        self.adapter = adapter
        self.closed = False

    async def close(self):
        self.closed = True

    async def insert(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(data)
        row[self.adapter.tenant_field] = self.tenant_id
        self.adapter.tables.setdefault(table, []).append(row)
        return row

    async def find(self, table: str) -> List[Dict[str, Any]]:
        field = self.adapter.tenant_field
        return [r for r in self.adapter.tables.get(table, []) if r.get(field) == self.tenant_id]


class FakeAdapter(BaseAdapter):
    """In-memory adapter; `calls` lists every storage operation in order."""

    adapter_type = AdapterType.RELATIONAL
    provider_schemes = {"postgres": "postgresql", "postgresql": "postgresql"}
    system_database = "postgres"

    def __init__(self, config: DatabaseConfig, databases: Optional[Set[str]] = None):
        super().__init__(config)
        self.databases: Set[str] = set(databases or ())
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[str] = []
        self.opened: List[FakeClient] = []
        self.gate: Optional[asyncio.Event] = None
        self.open_error: Optional[Exception] = None
        self.drop_error: Optional[Exception] = None

    async def _open(self, url: str) -> FakeClient:
        self.calls.append(f"open:{url}")
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.open_error is not None:
            raise self.open_error
        client = FakeClient(url)
        self.opened.append(client)
        return client

    async def close_client(self, client: Any) -> None:
        self.calls.append(f"close:{client.url}")
        client.closed = True

    async def ping(self, client: Any) -> None:
        self.calls.append("ping")

    async def execute_query(self, query: Any, *params: Any) -> Any:
        self.calls.append(f"query:{query}")
        return []

    async def _create_database(self, name: str) -> None:
        self.calls.append(f"create:{name}")
        if name in self.databases:
            raise TenantAlreadyExistsError(f"Database '{name}' already exists")
        self.databases.add(name)

    async def _drop_database(self, name: str) -> None:
        self.calls.append(f"drop:{name}")
        if self.drop_error is not None:
            raise self.drop_error
        self.databases.discard(name)

    async def list_databases(self) -> List[str]:
        self.calls.append("list")
        return sorted(self.databases)

    def apply_tenant_middleware(self, client: Any, tenant_id: str) -> FakeScopedClient:
        return FakeScopedClient(client, tenant_id, self)

    async def distinct_tenants(self) -> Set[str]:
        self.calls.append("distinct")
        return {
            row[self.tenant_field]
            for rows in self.tables.values()
            for row in rows
            if row.get(self.tenant_field) is not None
        }

    async def tenant_has_data(self, tenant_id: str) -> bool:
        self.calls.append(f"has_data:{tenant_id}")
        return any(
            row.get(self.tenant_field) == tenant_id
            for rows in self.tables.values()
            for row in rows
        )

    async def purge_tenant(self, tenant_id: str) -> int:
        self.calls.append(f"purge:{tenant_id}")
        removed = 0
        for table, rows in self.tables.items():
            kept = [r for r in rows if r.get(self.tenant_field) != tenant_id]
            removed += len(rows) - len(kept)
            self.tables[table] = kept
        return removed


class FakeConnection:
    def __init__(self, pool: "FakePool"):
        self.pool = pool

    @asynccontextmanager
    async def transaction(self):
        self.pool.log.append(("begin", None, ()))
        yield
        self.pool.log.append(("commit", None, ()))

    async def execute(self, query, *args):
        return self.pool._record("execute", query, args)

    async def executemany(self, query, args):
        return self.pool._record("executemany", query, (args,))

    async def fetch(self, query, *args):
        return self.pool._record("fetch", query, args)

    async def fetchrow(self, query, *args):
        return self.pool._record("fetchrow", query, args)

    async def fetchval(self, query, *args):
        return self.pool._record("fetchval", query, args)


class FakePool:
    """
    Records statements instead of running them.

    `results` maps a query substring to the value returned for it.
    """

    DEFAULTS = {"execute": "OK", "executemany": None, "fetch": [], "fetchrow": None, "fetchval": 1}

    def __init__(self):
        self.log: List[tuple] = []
        self.results: Dict[str, Any] = {}
        self.closed = False

    def _record(self, method: str, query: str, args: tuple) -> Any:
        self.log.append((method, query, args))
        for fragment, value in self.results.items():
            if fragment in query:
                return value
        return self.DEFAULTS[method]

    def statements(self, method: Optional[str] = None) -> List[tuple]:
        return [entry for entry in self.log if method is None or entry[0] == method]

    @asynccontextmanager
    async def acquire(self):
        yield FakeConnection(self)

    async def execute(self, query, *args):
        return self._record("execute", query, args)

    async def fetch(self, query, *args):
        return self._record("fetch", query, args)

    async def fetchval(self, query, *args):
        return self._record("fetchval", query, args)

    async def close(self):
        self.closed = True


def _matches(document: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    for key, expected in (filter or {}).items():
        if isinstance(expected, dict) and "$ne" in expected:
            if document.get(key) == expected["$ne"]:
                return False
        elif document.get(key) != expected:
            return False
    return True


class FakeCursor:
    def __init__(self, documents: List[Dict[str, Any]]):
        self.documents = documents

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        return list(self.documents if length is None else self.documents[:length])


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.documents: List[Dict[str, Any]] = []
        self.pipelines: List[list] = []

    async def insert_one(self, document, **kwargs):
        self.documents.append(dict(document))
        return SimpleNamespace(inserted_id=len(self.documents))

    async def insert_many(self, documents, **kwargs):
        for document in documents:
            self.documents.append(dict(document))
        return SimpleNamespace(inserted_ids=list(range(len(documents))))

    def find(self, filter=None, *args, **kwargs):
        return FakeCursor([d for d in self.documents if _matches(d, filter)])

    async def find_one(self, filter=None, *args, **kwargs):
        for document in self.documents:
            if _matches(document, filter):
                return document
        return None

    async def count_documents(self, filter, **kwargs):
        return len([d for d in self.documents if _matches(d, filter)])

    async def distinct(self, key, filter=None, **kwargs):
        values = []
        for document in self.documents:
            if _matches(document, filter) and key in document and document[key] not in values:
                values.append(document[key])
        return values

    async def update_many(self, filter, update, **kwargs):
        matched = [d for d in self.documents if _matches(d, filter)]
        for document in matched:
            document.update(update.get("$set", {}))
        return SimpleNamespace(modified_count=len(matched))

    async def delete_many(self, filter, **kwargs):
        kept = [d for d in self.documents if not _matches(d, filter)]
        removed = len(self.documents) - len(kept)
        self.documents = kept
        return SimpleNamespace(deleted_count=removed)

    def aggregate(self, pipeline, **kwargs):
        self.pipelines.append(list(pipeline))
        match = pipeline[0].get("$match", {}) if pipeline else {}
        return FakeCursor([d for d in self.documents if _matches(d, match)])


class FakeMotorDatabase:
    def __init__(self, name: str, client: "FakeMotorClient"):
        self.name = name
        self.client = client
        self.collections: Dict[str, FakeCollection] = {}
        self.command = AsyncMock(return_value={"ok": 1})

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection(name))

    async def list_collection_names(self) -> List[str]:
        return list(self.collections)

    async def create_collection(self, name: str) -> FakeCollection:
        if name in self.collections:
            raise CollectionInvalid(f"collection {name} already exists")
        return self[name]


class FakeMotorClient:
    """Replacement for AsyncIOMotorClient; instances are kept in `created`."""

    created: List["FakeMotorClient"] = []

    def __init__(self, url: str, **kwargs):
        self.url = url
        self.kwargs = kwargs
        self.closed = False
        self.databases: Dict[str, FakeMotorDatabase] = {}
        self.admin = SimpleNamespace(command=AsyncMock(return_value={"ok": 1}))
        FakeMotorClient.created.append(self)

    def __getitem__(self, name: str) -> FakeMotorDatabase:
        return self.databases.setdefault(name, FakeMotorDatabase(name, self))

    def get_default_database(self) -> FakeMotorDatabase:
        name = urlsplit(self.url).path.strip("/")
        if not name:
            raise MongoConfigurationError("No default database name defined or provided.")
        return self[name]

    def close(self):
        self.closed = True

    async def list_database_names(self) -> List[str]:
        return list(self.databases)

    async def drop_database(self, name: str) -> None:
        self.databases.pop(name, None)


@pytest.fixture
def row_config():
    """Row strategy configuration."""
    return DatabaseConfig(url="postgres://localhost/app", strategy="row")


@pytest.fixture
def database_config():
    """Database-per-tenant configuration."""
    return DatabaseConfig(url="postgres://localhost/", strategy="database")


@pytest.fixture
def row_db(row_config):
    """Row-strategy TenantDatabase over a FakeAdapter."""
    return create_db(row_config, adapter=FakeAdapter(row_config))


@pytest.fixture
def database_db(database_config):
    """Database-strategy TenantDatabase over a FakeAdapter."""
    return create_db(database_config, adapter=FakeAdapter(database_config))


@pytest.fixture
def fake_pool():
    return FakePool()


@pytest.fixture
def fake_motor(monkeypatch):
    """Patch motor's client class in the document adapter."""
    FakeMotorClient.created = []
    monkeypatch.setattr("tenantdb.database.mongodb_impl.AsyncIOMotorClient", FakeMotorClient)
    return FakeMotorClient
