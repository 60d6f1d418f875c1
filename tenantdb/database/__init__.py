"""
Database Module
===============

Adapters, connection cache and the tenant database facade.

Classes:
    DatabaseConfig: Immutable connection configuration
    BaseAdapter: Abstract base class for storage adapters
    PostgreSQLAdapter: asyncpg-backed relational adapter
    MongoDBAdapter: motor-backed document adapter
    ConnectionCache: Tenant id -> live connection cache
    TenantDatabase: Tenant-aware facade returned by create_db()
    Various exceptions for error handling
"""

from .base import (
    AdapterType,
    BaseAdapter,
    ConfigurationError,
    ConnectionError,
    DatabaseConfig,
    DatabaseError,
    QueryError,
    StrategyType,
    TenantAlreadyExistsError,
    TenantNotFoundError,
    TenantResolutionError,
    ValidationError,
    validate_tenant_id,
)
from .cache import CacheMetrics, CachePolicy, ConnectionCache
from .postgresql_impl import PostgreSQLAdapter, TenantScopedPool
from .mongodb_impl import MongoDBAdapter, TenantScopedCollection, TenantScopedDatabase
from .factory import DatabaseFactory, TenantDatabase, create_db

__all__ = [
    # Core interfaces
    "BaseAdapter",
    "DatabaseConfig",
    "AdapterType",
    "StrategyType",
    "validate_tenant_id",

    # Facade
    "DatabaseFactory",
    "TenantDatabase",
    "create_db",

    # Components
    "ConnectionCache",
    "CachePolicy",
    "CacheMetrics",

    # Implementations
    "PostgreSQLAdapter",
    "TenantScopedPool",
    "MongoDBAdapter",
    "TenantScopedDatabase",
    "TenantScopedCollection",

    # Exceptions
    "DatabaseError",
    "ConfigurationError",
    "ConnectionError",
    "QueryError",
    "ValidationError",
    "TenantNotFoundError",
    "TenantAlreadyExistsError",
    "TenantResolutionError",
]
