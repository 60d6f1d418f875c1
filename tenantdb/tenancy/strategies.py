"""
Tenant isolation strategies.

A strategy maps tenant ids to connections through the connection cache
and implements tenant lifecycle on top of an adapter:

- RowStrategy: one shared database, every connection is the shared client
  wrapped by the adapter's tenant filter.
- DatabaseStrategy: one logical database per tenant, named
  ``<prefix><tenant_id>``, each with its own client.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set
from urllib.parse import urlsplit
import logging

from ..database.base import (
    TENANT_PLACEHOLDER,
    TENANT_ID_PATTERN,
    BaseAdapter,
    ConfigurationError,
    ConnectionError,
    DatabaseConfig,
    DatabaseError,
    QueryError,
    StrategyType,
    TenantAlreadyExistsError,
    TenantNotFoundError,
    validate_database_name,
)
from ..database.cache import CachePolicy, ConnectionCache

logger = logging.getLogger(__name__)


def tenant_error(
    error: Exception,
    tenant_id: str,
    action: str,
    default_cls: type = QueryError
) -> DatabaseError:
    """
    Attach tenant context to an error raised below the strategy.

    Errors that already name the tenant are returned unchanged and should
    be re-raised as they are. Other DatabaseErrors keep their class;
    anything else becomes default_cls.
    """
    if isinstance(error, DatabaseError):
        if error.tenant_id == tenant_id:
            return error
        return error.__class__(
            f"Failed to {action} for tenant '{tenant_id}': {error}",
            original_error=error.original_error or error,
            tenant_id=tenant_id,
            status_code=error.status_code,
            **error.metadata
        )
    return default_cls(
        f"Failed to {action} for tenant '{tenant_id}': {error}",
        original_error=error,
        tenant_id=tenant_id
    )


class TenantStrategy(ABC):
    """
    Base class for isolation strategies.

    Tenant ids reaching a strategy have already been validated by the
    database facade.
    """

    strategy_type: StrategyType

    def __init__(
        self,
        config: DatabaseConfig,
        adapter: BaseAdapter,
        cache: Optional[ConnectionCache] = None
    ):
        self.config = config
        self.adapter = adapter
        self.cache = cache or ConnectionCache(
            close_client=self._close_connection,
            policy=CachePolicy(
                max_entries=config.max_connections,
                idle_timeout=config.idle_timeout,
                max_age=config.max_age
            )
        )
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def _open_connection(self, tenant_id: str) -> Any:
        try:
            return await self._connect_tenant(tenant_id)
        except Exception as e:
            error = tenant_error(e, tenant_id, "connect", ConnectionError)
            if error is e:
                raise
            raise error from e

    async def get_connection(self, tenant_id: str) -> Any:
        """Return the tenant's connection, opening it once on first use."""
        return await self.cache.get_or_create(tenant_id, lambda: self._open_connection(tenant_id))

    async def acquire(self, tenant_id: str) -> Any:
        """Like get_connection, but the cache will not close it until release()."""
        return await self.cache.acquire(tenant_id, lambda: self._open_connection(tenant_id))

    async def release(self, tenant_id: str, client: Any) -> None:
        await self.cache.release(tenant_id, client)

    async def delete_tenant(self, tenant_id: str) -> None:
        """
        Delete a tenant's storage and its cached connection.

        The cached connection is dropped before the storage is touched and
        again afterwards, so a connection opened by a racing request does
        not survive the delete. The cache is cleaned even if deletion fails.
        """
        await self.cache.invalidate(tenant_id)
        try:
            await self._delete_storage(tenant_id)
        except Exception as e:
            self.logger.error(f"Failed to delete tenant '{tenant_id}': {e}")
            error = tenant_error(e, tenant_id, "delete tenant")
            if error is e:
                raise
            raise error from e
        finally:
            await self.cache.invalidate(tenant_id)
        self.logger.info(f"Deleted tenant '{tenant_id}'")

    async def disconnect(self) -> None:
        await self.cache.clear()

    def stats(self) -> Dict[str, Any]:
        return {"strategy": self.strategy_type.value, "cache": self.cache.stats()}

    @abstractmethod
    async def _connect_tenant(self, tenant_id: str) -> Any:
        pass

    @abstractmethod
    async def _close_connection(self, client: Any) -> None:
        pass

    @abstractmethod
    async def _delete_storage(self, tenant_id: str) -> None:
        pass

    @abstractmethod
    async def create_tenant(self, tenant_id: str) -> None:
        pass

    @abstractmethod
    async def tenant_exists(self, tenant_id: str) -> bool:
        pass

    @abstractmethod
    async def list_tenants(self) -> List[str]:
        pass


class RowStrategy(TenantStrategy):
    """
    Shared-schema isolation.

    Every tenant-bearing table or collection must carry the tenant column
    (``DatabaseConfig.tenant_field``); rows without it are invisible to all
    tenants. Tenants have no storage of their own, so create_tenant only
    records the id for this process.
    """

    strategy_type = StrategyType.ROW

    def __init__(
        self,
        config: DatabaseConfig,
        adapter: BaseAdapter,
        cache: Optional[ConnectionCache] = None
    ):
        if TENANT_PLACEHOLDER in config.url:
            raise ConfigurationError(
                f"Row strategy cannot use a '{TENANT_PLACEHOLDER}' placeholder in the URL"
            )
        if not urlsplit(config.url).path.strip("/"):
            raise ConfigurationError("Row strategy requires the URL to name a database")

        super().__init__(config, adapter, cache)
        self._declared: Set[str] = set()

    async def _connect_tenant(self, tenant_id: str) -> Any:
        base = await self.adapter.connect()
        return self.adapter.apply_tenant_middleware(base, tenant_id)

    async def _close_connection(self, client: Any) -> None:
        # Only the wrapper is retired; the shared client belongs to the adapter
        await client.close()

    async def create_tenant(self, tenant_id: str) -> None:
        self._declared.add(tenant_id)
        self.logger.debug(f"Declared row tenant '{tenant_id}'")

    async def _delete_storage(self, tenant_id: str) -> None:
        self._declared.discard(tenant_id)
        await self.adapter.purge_tenant(tenant_id)

    async def tenant_exists(self, tenant_id: str) -> bool:
        if tenant_id in self._declared:
            return True
        try:
            return await self.adapter.tenant_has_data(tenant_id)
        except Exception as e:
            error = tenant_error(e, tenant_id, "check tenant")
            if error is e:
                raise
            raise error from e

    async def list_tenants(self) -> List[str]:
        tenants = set(self._declared)
        tenants.update(await self.adapter.distinct_tenants())
        return sorted(tenants)


class DatabaseStrategy(TenantStrategy):
    """Database-per-tenant isolation."""

    strategy_type = StrategyType.DATABASE

    def database_name(self, tenant_id: str) -> str:
        return validate_database_name(f"{self.config.database_prefix}{tenant_id}")

    def tenant_url(self, tenant_id: str) -> str:
        return self.adapter.build_database_url(self.database_name(tenant_id))

    async def _database_present(self, name: str) -> bool:
        return name in await self.adapter.list_databases()

    async def _connect_tenant(self, tenant_id: str) -> Any:
        if not await self._database_present(self.database_name(tenant_id)):
            raise TenantNotFoundError(f"Tenant '{tenant_id}' does not exist", tenant_id=tenant_id)
        return await self.adapter.create_client(self.tenant_url(tenant_id))

    async def _close_connection(self, client: Any) -> None:
        await self.adapter.close_client(client)

    async def create_tenant(self, tenant_id: str) -> None:
        name = self.database_name(tenant_id)
        try:
            if await self._database_present(name):
                raise TenantAlreadyExistsError(f"Tenant '{tenant_id}' already exists", tenant_id=tenant_id)
            await self.adapter.create_database(name)
        except Exception as e:
            error = tenant_error(e, tenant_id, "create tenant")
            if error is e:
                raise
            raise error from e
        self.logger.info(f"Created tenant '{tenant_id}' (database '{name}')")

    async def _delete_storage(self, tenant_id: str) -> None:
        name = self.database_name(tenant_id)
        if not await self._database_present(name):
            raise TenantNotFoundError(f"Tenant '{tenant_id}' does not exist", tenant_id=tenant_id)
        await self.adapter.drop_database(name)

    async def tenant_exists(self, tenant_id: str) -> bool:
        try:
            return await self._database_present(self.database_name(tenant_id))
        except Exception as e:
            error = tenant_error(e, tenant_id, "check tenant")
            if error is e:
                raise
            raise error from e

    async def list_tenants(self) -> List[str]:
        prefix = self.config.database_prefix
        tenants = []
        for name in await self.adapter.list_databases():
            if not name.startswith(prefix):
                continue
            tenant_id = name[len(prefix):]
            if tenant_id and TENANT_ID_PATTERN.match(tenant_id):
                tenants.append(tenant_id)
        return sorted(tenants)
