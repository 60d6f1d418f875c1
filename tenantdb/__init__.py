"""
tenantdb
========

Multi-tenant database access layer.

Hands out tenant-isolated connections using either shared-schema row
filtering or one logical database per tenant, over PostgreSQL (asyncpg)
or MongoDB (motor).

Quick Start:
    from tenantdb import create_db

    db = create_db({"url": "postgres://localhost/{tenant}"})
    await db.create_tenant("acme")
    pool = await db.get_connection("acme")
    await db.disconnect()
"""

__version__ = "1.0.0"

from .database import (
    AdapterType,
    ConfigurationError,
    ConnectionError,
    DatabaseConfig,
    DatabaseError,
    QueryError,
    StrategyType,
    TenantAlreadyExistsError,
    TenantDatabase,
    TenantNotFoundError,
    TenantResolutionError,
    ValidationError,
    create_db,
)
from .tenancy import (
    TenantContext,
    TenantMiddleware,
    TenantResolutionConfig,
    create_middleware,
    get_current_tenant,
    require_tenant,
)

__all__ = [
    "create_db",
    "create_middleware",
    "get_current_tenant",
    "require_tenant",
    "TenantDatabase",
    "DatabaseConfig",
    "AdapterType",
    "StrategyType",
    "TenantMiddleware",
    "TenantResolutionConfig",
    "TenantContext",
    "DatabaseError",
    "ConfigurationError",
    "ConnectionError",
    "QueryError",
    "ValidationError",
    "TenantNotFoundError",
    "TenantAlreadyExistsError",
    "TenantResolutionError",
    "__version__",
]
