"""
Multi-Tenancy Module
===================

Isolation strategies and request-level tenant resolution.
"""

from .strategies import DatabaseStrategy, RowStrategy, TenantStrategy
from .tenant_middleware import (
    TenantContext,
    TenantMiddleware,
    TenantResolutionConfig,
    TenantResolutionStrategy,
    TenantResolver,
    create_middleware,
    get_current_tenant,
    require_tenant,
)

__all__ = [
    "TenantStrategy",
    "RowStrategy",
    "DatabaseStrategy",
    "TenantContext",
    "TenantMiddleware",
    "TenantResolutionConfig",
    "TenantResolutionStrategy",
    "TenantResolver",
    "create_middleware",
    "get_current_tenant",
    "require_tenant",
]
