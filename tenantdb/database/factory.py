"""
Database Factory
================

Builds a TenantDatabase from configuration: validates the connection URL,
selects the adapter from the URL scheme and the isolation strategy from
explicit config, the ``TENANTDB_STRATEGY`` environment hint or the
``{tenant}`` URL placeholder.

Supported Adapters:
- relational: PostgreSQL (asyncpg)
- document: MongoDB (motor)

Usage:
    db = create_db({"url": "postgres://localhost/app"})
    conn = await db.get_connection("acme")
    await conn.insert("orders", {"total": 10})
    await db.disconnect()
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Type
from urllib.parse import urlsplit
import logging
import os
import time

from .base import (
    TENANT_PLACEHOLDER,
    AdapterType,
    BaseAdapter,
    ConfigInput,
    ConfigurationError,
    DatabaseConfig,
    StrategyType,
    ValidationError,
    mask_url,
    validate_tenant_id,
)
from .mongodb_impl import MongoDBAdapter
from .postgresql_impl import PostgreSQLAdapter
from ..tenancy.strategies import DatabaseStrategy, RowStrategy, TenantStrategy

logger = logging.getLogger(__name__)


STRATEGY_ENV = "TENANTDB_STRATEGY"


class TenantDatabase:
    """
    Tenant-aware database handle.

    Validates tenant ids and delegates to the configured strategy; every
    tenant operation raises ValidationError for a malformed id before any
    storage I/O happens.
    """

    def __init__(self, config: DatabaseConfig, adapter: BaseAdapter, strategy: TenantStrategy):
        self.config = config
        self.adapter = adapter
        self.strategy = strategy
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def strategy_type(self) -> StrategyType:
        return self.strategy.strategy_type

    @property
    def adapter_type(self) -> AdapterType:
        return self.adapter.adapter_type

    def _validate(self, tenant_id: Any) -> str:
        return validate_tenant_id(tenant_id, self.config.reserved_tenant_ids)

    async def get_connection(self, tenant_id: str) -> Any:
        """
        Get a ready-to-use connection confined to a tenant.

        Args:
            tenant_id: Tenant identifier

        Returns:
            A tenant-scoped wrapper (row strategy) or the tenant database's
            own client (database strategy)

        Raises:
            ValidationError: If tenant_id is malformed
            TenantNotFoundError: If the tenant's database does not exist
            ConnectionError: If the storage cannot be reached
        """
        return await self.strategy.get_connection(self._validate(tenant_id))

    async def acquire(self, tenant_id: str) -> Any:
        return await self.strategy.acquire(self._validate(tenant_id))

    async def release(self, tenant_id: str, client: Any) -> None:
        await self.strategy.release(tenant_id, client)

    @asynccontextmanager
    async def lease(self, tenant_id: str) -> AsyncIterator[Any]:
        """Hold a tenant connection; it is not closed by eviction while held."""
        client = await self.acquire(tenant_id)
        try:
            yield client
        finally:
            await self.release(tenant_id, client)

    async def client(self) -> Any:
        """
        Raw client for the configured URL, not confined to any tenant.

        Meant for administrative work such as migrations. Queries made
        through it bypass tenant isolation.
        """
        return await self.adapter.connect()

    async def create_tenant(self, tenant_id: str) -> None:
        await self.strategy.create_tenant(self._validate(tenant_id))

    async def delete_tenant(self, tenant_id: str) -> None:
        await self.strategy.delete_tenant(self._validate(tenant_id))

    async def tenant_exists(self, tenant_id: str) -> bool:
        return await self.strategy.tenant_exists(self._validate(tenant_id))

    async def list_tenants(
        self,
        limit: Optional[int] = None,
        predicate: Optional[Callable[[str], bool]] = None
    ) -> List[str]:
        """
        List known tenants in sorted order.

        Args:
            limit: Maximum number of tenants to return
            predicate: Keep only tenants for which this returns True
        """
        if limit is not None and (not isinstance(limit, int) or limit < 0):
            raise ValidationError(f"Invalid limit: {limit!r}")

        tenants = await self.strategy.list_tenants()
        if predicate is not None:
            tenants = [t for t in tenants if predicate(t)]
        if limit is not None:
            tenants = tenants[:limit]
        return tenants

    async def health(self) -> Dict[str, Any]:
        """
        Check connectivity through the default client.

        Returns:
            Health status and cache statistics
        """
        start_time = time.time()
        result: Dict[str, Any] = {
            "provider": self.adapter.detect_provider(),
            "strategy": self.strategy_type.value,
            "adapter": self.adapter_type.value,
        }
        try:
            client = await self.adapter.connect()
            await self.adapter.ping(client)
            result["status"] = "healthy"
        except Exception as e:
            self.logger.error(f"Health check failed: {e}")
            result["status"] = "unhealthy"
            result["error"] = str(e)

        result["response_time_ms"] = (time.time() - start_time) * 1000
        result["cache"] = self.strategy.cache.stats()
        result["timestamp"] = datetime.now(timezone.utc).isoformat()
        return result

    def describe(self) -> Dict[str, Any]:
        """Summarise the resolved configuration."""
        return {
            "provider": self.adapter.detect_provider(),
            "strategy": self.strategy_type.value,
            "adapter": self.adapter_type.value,
            "url": mask_url(self.config.url),
            "tenant_field": self.config.tenant_field,
            "database_prefix": self.config.database_prefix,
            "cached_connections": len(self.strategy.cache),
        }

    async def disconnect(self) -> None:
        """Close all tenant connections and adapter clients. Safe to call repeatedly."""
        await self.strategy.disconnect()
        await self.adapter.disconnect()
        self.logger.info("Tenant database disconnected")

    async def __aenter__(self) -> "TenantDatabase":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()


class DatabaseFactory:
    """
    Factory for creating tenant databases based on configuration.

    Adapters and strategies are looked up in class-level registries keyed
    by AdapterType and StrategyType.
    """

    _adapter_registry: Dict[AdapterType, Type[BaseAdapter]] = {
        AdapterType.RELATIONAL: PostgreSQLAdapter,
        AdapterType.DOCUMENT: MongoDBAdapter,
    }
    _strategy_registry: Dict[StrategyType, Type[TenantStrategy]] = {
        StrategyType.ROW: RowStrategy,
        StrategyType.DATABASE: DatabaseStrategy,
    }

    @classmethod
    def register_adapter(cls, adapter_type: AdapterType, implementation: Type[BaseAdapter]) -> None:
        cls._adapter_registry[adapter_type] = implementation
        logger.info(f"Registered adapter implementation: {adapter_type.value}")

    @classmethod
    def detect_adapter(cls, url: str) -> AdapterType:
        """Pick the adapter family from the URL scheme."""
        scheme = urlsplit(url).scheme.lower()
        for adapter_type, implementation in cls._adapter_registry.items():
            if scheme in implementation.provider_schemes:
                return adapter_type

        available = sorted(
            s for impl in cls._adapter_registry.values() for s in impl.provider_schemes
        )
        raise ConfigurationError(
            f"Unsupported database URL scheme '{scheme}'. Available schemes: {available}"
        )

    @classmethod
    def detect_strategy(cls, url: str, env: Optional[Mapping[str, str]] = None) -> StrategyType:
        """Pick the strategy from the environment hint, else the URL placeholder."""
        env = os.environ if env is None else env
        hint = env.get(STRATEGY_ENV)
        if hint:
            config = DatabaseConfig(url=url, strategy=hint)
            return config.strategy
        if TENANT_PLACEHOLDER in url:
            return StrategyType.DATABASE
        return StrategyType.ROW

    @classmethod
    def resolve_config(cls, config: DatabaseConfig, adapter: Optional[BaseAdapter] = None) -> DatabaseConfig:
        """
        Validate the URL and fill in adapter and strategy.

        Raises:
            ConfigurationError: If the URL is missing or malformed, or the
                explicit adapter contradicts the URL scheme
        """
        url = config.url
        if not isinstance(url, str) or not url.strip():
            raise ConfigurationError(
                "Database URL is required (pass url= or set TENANTDB_DB_URL / DATABASE_URL)"
            )

        parts = urlsplit(url)
        if not parts.scheme or not parts.netloc:
            raise ConfigurationError(f"Invalid database URL '{mask_url(url)}': scheme and host are required")

        detected = adapter.adapter_type if adapter is not None else cls.detect_adapter(url)
        if config.adapter is not None and config.adapter != detected:
            raise ConfigurationError(
                f"Adapter '{config.adapter.value}' does not match URL scheme '{parts.scheme}'"
            )

        strategy = config.strategy or cls.detect_strategy(url)
        return config.with_overrides(adapter=detected, strategy=strategy)

    @classmethod
    def create(cls, config: DatabaseConfig, adapter: Optional[BaseAdapter] = None) -> TenantDatabase:
        """
        Create a tenant database. No I/O happens until first use.

        Args:
            config: Database configuration
            adapter: Optional adapter instance to use instead of the registry's

        Returns:
            Configured TenantDatabase
        """
        resolved = cls.resolve_config(config, adapter)

        if adapter is None:
            adapter = cls._adapter_registry[resolved.adapter](resolved)
        strategy = cls._strategy_registry[resolved.strategy](resolved, adapter)

        logger.info(
            f"Created tenant database: strategy={resolved.strategy.value} "
            f"adapter={resolved.adapter.value} url={mask_url(resolved.url)}"
        )
        return TenantDatabase(resolved, adapter, strategy)

    @classmethod
    def get_available_adapters(cls) -> Dict[str, List[str]]:
        return {
            adapter_type.value: sorted(impl.provider_schemes)
            for adapter_type, impl in cls._adapter_registry.items()
        }


def create_db(
    config: ConfigInput = None,
    adapter: Optional[BaseAdapter] = None,
    **overrides
) -> TenantDatabase:
    """
    Create a tenant database.

    Args:
        config: DatabaseConfig, a dict of its fields, or None to load
            settings from the environment and configuration file
        adapter: Optional adapter instance
        **overrides: DatabaseConfig fields to replace

    Returns:
        Configured TenantDatabase

    Example:
        db = create_db({"url": "postgres://localhost/{tenant}"})
        await db.create_tenant("acme")
    """
    if config is None:
        from ..config.config_manager import get_settings
        config = get_settings().to_database_config()
    elif isinstance(config, dict):
        config = DatabaseConfig.from_dict(config)
    elif not isinstance(config, DatabaseConfig):
        raise ConfigurationError(f"Unsupported config type: {type(config).__name__}")

    if overrides:
        try:
            config = config.with_overrides(**overrides)
        except TypeError as e:
            raise ConfigurationError(f"Invalid config override: {e}", original_error=e) from e

    return DatabaseFactory.create(config, adapter)
