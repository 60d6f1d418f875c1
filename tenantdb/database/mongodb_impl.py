"""
MongoDB adapter.

Clients are motor database handles; the database is taken from the URL
path. Row-level isolation is provided by TenantScopedDatabase, whose
collections inject the tenant field into every filter and stamp it on
every inserted document.
"""

from typing import Any, Dict, List, Optional, Sequence, Set
import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, PyMongoError
from pymongo.errors import ConfigurationError as MongoConfigurationError

from .base import (
    AdapterType,
    BaseAdapter,
    ConfigurationError,
    ConnectionError,
    QueryError,
    TenantAlreadyExistsError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# Created so that a new database becomes visible in listDatabases
INIT_COLLECTION = "_init"

# Stages that read or write another collection without the tenant filter
CROSS_COLLECTION_STAGES = frozenset({"$lookup", "$unionWith", "$graphLookup", "$out", "$merge"})

# Pipeline-update stages whose effect on the tenant field can be checked by name
PIPELINE_UPDATE_STAGES = frozenset({"$set", "$addFields", "$unset"})


class TenantScopedCollection:
    """Collection view that only ever sees one tenant's documents."""

    def __init__(self, collection: Any, owner: "TenantScopedDatabase"):
        self._collection = collection
        self._owner = owner

    @property
    def name(self) -> str:
        return self._collection.name

    @property
    def tenant_id(self) -> str:
        return self._owner.tenant_id

    @property
    def tenant_field(self) -> str:
        return self._owner.tenant_field

    def _scope(self, filter: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        scoped = dict(filter or {})
        scoped[self.tenant_field] = self.tenant_id
        return scoped

    def _stamp(self, document: Dict[str, Any]) -> Dict[str, Any]:
        stamped = dict(document)
        stamped[self.tenant_field] = self.tenant_id
        return stamped

    def _touches_tenant_field(self, path: Any) -> bool:
        return isinstance(path, str) and (
            path == self.tenant_field or path.startswith(self.tenant_field + ".")
        )

    def _reject_update(self, operator: str) -> None:
        raise ValidationError(
            f"Updates may not modify '{self.tenant_field}' ({operator})",
            tenant_id=self.tenant_id
        )

    def _check_update_stage(self, stage: Any, pipeline: bool) -> None:
        if not isinstance(stage, dict):
            raise ValidationError(f"Invalid update document: {stage!r}", tenant_id=self.tenant_id)

        for operator, fields in stage.items():
            if pipeline and operator not in PIPELINE_UPDATE_STAGES:
                raise ValidationError(
                    f"Update pipeline stage '{operator}' is not allowed; use "
                    f"{', '.join(sorted(PIPELINE_UPDATE_STAGES))}",
                    tenant_id=self.tenant_id
                )

            if isinstance(fields, dict):
                paths = list(fields)
                if operator == "$rename":
                    paths.extend(fields.values())
            elif isinstance(fields, (list, tuple)):
                paths = list(fields)
            else:
                paths = [fields] if operator == "$unset" else []

            if any(self._touches_tenant_field(path) for path in paths):
                self._reject_update(operator)

    def _guard_update(self, update: Any) -> Any:
        # A list is an aggregation-pipeline update
        if isinstance(update, (list, tuple)):
            for stage in update:
                self._check_update_stage(stage, pipeline=True)
        else:
            self._check_update_stage(update, pipeline=False)
        return update

    def _guard_pipeline(self, pipeline: Sequence[Dict[str, Any]]) -> None:
        for stage in pipeline:
            if not isinstance(stage, dict):
                raise ValidationError(f"Invalid pipeline stage: {stage!r}", tenant_id=self.tenant_id)
            for operator, spec in stage.items():
                if operator in CROSS_COLLECTION_STAGES:
                    raise ValidationError(
                        f"Pipeline stage '{operator}' reaches outside the tenant scope",
                        tenant_id=self.tenant_id
                    )
                if operator == "$facet" and isinstance(spec, dict):
                    for branch in spec.values():
                        self._guard_pipeline(branch)

    async def _call(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        self._owner._ensure_open()
        try:
            return await getattr(self._collection, operation)(*args, **kwargs)
        except PyMongoError as e:
            logger.error(f"{operation} on '{self.name}' failed for tenant '{self.tenant_id}': {e}")
            raise QueryError(
                f"{operation} failed for tenant '{self.tenant_id}': {e}",
                original_error=e,
                tenant_id=self.tenant_id
            ) from e

    async def insert_one(self, document: Dict[str, Any], **kwargs: Any) -> Any:
        return await self._call("insert_one", self._stamp(document), **kwargs)

    async def insert_many(self, documents: Sequence[Dict[str, Any]], **kwargs: Any) -> Any:
        return await self._call("insert_many", [self._stamp(d) for d in documents], **kwargs)

    async def replace_one(self, filter: Dict[str, Any], replacement: Dict[str, Any], **kwargs: Any) -> Any:
        return await self._call("replace_one", self._scope(filter), self._stamp(replacement), **kwargs)

    def find(self, filter: Optional[Dict[str, Any]] = None, *args: Any, **kwargs: Any) -> Any:
        """Return a cursor over the tenant's matching documents."""
        self._owner._ensure_open()
        return self._collection.find(self._scope(filter), *args, **kwargs)

    async def find_one(self, filter: Optional[Dict[str, Any]] = None, *args: Any, **kwargs: Any) -> Any:
        return await self._call("find_one", self._scope(filter), *args, **kwargs)

    async def count_documents(self, filter: Optional[Dict[str, Any]] = None, **kwargs: Any) -> int:
        return await self._call("count_documents", self._scope(filter), **kwargs)

    async def distinct(self, key: str, filter: Optional[Dict[str, Any]] = None, **kwargs: Any) -> List[Any]:
        return await self._call("distinct", key, self._scope(filter), **kwargs)

    async def update_one(self, filter: Dict[str, Any], update: Any, **kwargs: Any) -> Any:
        return await self._call("update_one", self._scope(filter), self._guard_update(update), **kwargs)

    async def update_many(self, filter: Dict[str, Any], update: Any, **kwargs: Any) -> Any:
        return await self._call("update_many", self._scope(filter), self._guard_update(update), **kwargs)

    async def find_one_and_update(self, filter: Dict[str, Any], update: Any, **kwargs: Any) -> Any:
        return await self._call(
            "find_one_and_update", self._scope(filter), self._guard_update(update), **kwargs
        )

    async def delete_one(self, filter: Dict[str, Any], **kwargs: Any) -> Any:
        return await self._call("delete_one", self._scope(filter), **kwargs)

    async def delete_many(self, filter: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        return await self._call("delete_many", self._scope(filter), **kwargs)

    async def find_one_and_delete(self, filter: Dict[str, Any], **kwargs: Any) -> Any:
        return await self._call("find_one_and_delete", self._scope(filter), **kwargs)

    def aggregate(self, pipeline: Sequence[Dict[str, Any]], **kwargs: Any) -> Any:
        """
        Run an aggregation restricted to the tenant by a leading $match stage.

        Stages that reach other collections are rejected with ValidationError.
        """
        self._owner._ensure_open()
        self._guard_pipeline(pipeline)
        stages = [{"$match": {self.tenant_field: self.tenant_id}}, *pipeline]
        return self._collection.aggregate(stages, **kwargs)


class TenantScopedDatabase:
    """
    Tenant-confined view over a shared motor database.

    close() retires the view only; the shared client stays open.
    """

    def __init__(self, database: Any, tenant_id: str, tenant_field: str = "tenant_id"):
        self._database = database
        self.tenant_id = tenant_id
        self.tenant_field = tenant_field
        self._closed = False

    @property
    def database(self) -> Any:
        return self._database

    @property
    def name(self) -> str:
        return self._database.name

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConnectionError(
                f"Connection for tenant '{self.tenant_id}' has been closed",
                tenant_id=self.tenant_id
            )

    def collection(self, name: str) -> TenantScopedCollection:
        if not name or name.startswith("system."):
            raise ValidationError(f"Invalid collection name: {name!r}", tenant_id=self.tenant_id)
        self._ensure_open()
        return TenantScopedCollection(self._database[name], self)

    def __getitem__(self, name: str) -> TenantScopedCollection:
        return self.collection(name)

    async def list_collection_names(self) -> List[str]:
        self._ensure_open()
        names = await self._database.list_collection_names()
        return [n for n in names if not n.startswith("system.") and n != INIT_COLLECTION]


class MongoDBAdapter(BaseAdapter):
    """Document adapter backed by motor."""

    adapter_type = AdapterType.DOCUMENT
    provider_schemes = {"mongodb": "mongodb", "mongodb+srv": "mongodb"}
    system_database = "admin"
    system_databases = ("admin", "config", "local")

    def _client_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "serverSelectionTimeoutMS": 10000,
            "appname": "tenantdb",
        }
        options.update(self.config.options)
        return options

    async def _open(self, url: str) -> Any:
        try:
            client = AsyncIOMotorClient(url, **self._client_options())
        except MongoConfigurationError as e:
            raise ConfigurationError(f"Invalid MongoDB connection URL: {e}", original_error=e) from e

        try:
            database = client.get_default_database()
        except MongoConfigurationError as e:
            client.close()
            raise ConfigurationError(
                f"MongoDB URL must name a database: {e}", original_error=e
            ) from e

        try:
            await client.admin.command("ping")
        except Exception:
            client.close()
            raise
        return database

    async def close_client(self, client: Any) -> None:
        client.client.close()

    async def ping(self, client: Any) -> None:
        database = client.database if isinstance(client, TenantScopedDatabase) else client
        await database.command("ping")

    async def execute_query(self, query: Any, *params: Any) -> Any:
        database = await self.connect()
        try:
            return await database.command(query, *params)
        except PyMongoError as e:
            raise QueryError(f"Command failed: {e}", original_error=e) from e

    async def _create_database(self, name: str) -> None:
        database = await self.connect()
        try:
            await database.client[name].create_collection(INIT_COLLECTION)
        except CollectionInvalid as e:
            raise TenantAlreadyExistsError(f"Database '{name}' already exists", original_error=e) from e
        except PyMongoError as e:
            raise QueryError(f"Failed to create database '{name}': {e}", original_error=e) from e

    async def _drop_database(self, name: str) -> None:
        database = await self.connect()
        try:
            await database.client.drop_database(name)
        except PyMongoError as e:
            raise QueryError(f"Failed to drop database '{name}': {e}", original_error=e) from e

    async def list_databases(self) -> List[str]:
        database = await self.connect()
        try:
            names = await database.client.list_database_names()
        except PyMongoError as e:
            raise QueryError(f"Failed to list databases: {e}", original_error=e) from e
        return sorted(n for n in names if n not in self.system_databases)

    def apply_tenant_middleware(self, client: Any, tenant_id: str) -> TenantScopedDatabase:
        return TenantScopedDatabase(client, tenant_id, self.tenant_field)

    async def _tenant_collections(self, database: Any) -> List[str]:
        names = await database.list_collection_names()
        return [n for n in names if not n.startswith("system.") and n != INIT_COLLECTION]

    async def distinct_tenants(self) -> Set[str]:
        database = await self.connect()
        tenants: Set[str] = set()
        try:
            for name in await self._tenant_collections(database):
                values = await database[name].distinct(self.tenant_field, {self.tenant_field: {"$ne": None}})
                tenants.update(str(v) for v in values)
        except PyMongoError as e:
            raise QueryError(f"Failed to scan tenant ids: {e}", original_error=e) from e
        return tenants

    async def tenant_has_data(self, tenant_id: str) -> bool:
        database = await self.connect()
        try:
            for name in await self._tenant_collections(database):
                found = await database[name].find_one({self.tenant_field: tenant_id}, projection={"_id": 1})
                if found is not None:
                    return True
        except PyMongoError as e:
            raise QueryError(f"Failed to look up tenant data: {e}", original_error=e, tenant_id=tenant_id) from e
        return False

    async def purge_tenant(self, tenant_id: str) -> int:
        database = await self.connect()
        removed = 0
        try:
            collections = await self._tenant_collections(database)
            for name in collections:
                result = await database[name].delete_many({self.tenant_field: tenant_id})
                removed += result.deleted_count
        except PyMongoError as e:
            raise QueryError(f"Failed to purge tenant data: {e}", original_error=e, tenant_id=tenant_id) from e

        self.logger.info(f"Purged {removed} documents for tenant '{tenant_id}' from {len(collections)} collections")
        return removed
