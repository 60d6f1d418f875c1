"""
Tenant Middleware and Request Resolution
=======================================

Binds each request to a tenant connection.

Features:
- Tenant id resolution from header, subdomain, query parameter, path
  prefix or a custom callable, in a configurable order
- Optional default tenant and auto-creation of unknown tenants
- Tenant context attached to the request and published in a ContextVar
- Connection leases released at the end of every request

Request data is a plain dict with ``headers``, ``host``, ``path`` and
``query_string`` keys.
"""

import functools
import inspect
import logging
import re
import time
import urllib.parse
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..database.base import (
    DatabaseError,
    TenantAlreadyExistsError,
    TenantNotFoundError,
    TenantResolutionError,
    ValidationError,
    validate_tenant_id,
)

logger = logging.getLogger(__name__)


REQUEST_KEY = "tenant"
DEFAULT_IGNORED_SUBDOMAINS = ("www", "api", "admin", "app", "mail", "ftp")

CustomResolver = Callable[[Dict[str, Any]], Union[Optional[str], Awaitable[Optional[str]]]]


class TenantResolutionStrategy(Enum):
    """Strategies for resolving tenant from request."""
    HEADER = "header"
    SUBDOMAIN = "subdomain"
    QUERY_PARAM = "query_param"
    PATH_PREFIX = "path_prefix"
    CUSTOM = "custom"


@dataclass
class TenantResolutionConfig:
    """Configuration for tenant resolution."""
    resolution_order: Sequence[Union[TenantResolutionStrategy, str]] = (
        TenantResolutionStrategy.HEADER,
        TenantResolutionStrategy.SUBDOMAIN,
        TenantResolutionStrategy.CUSTOM,
    )

    # Header-based resolution
    header_name: str = "X-Tenant-ID"

    # Subdomain resolution; without a suffix the first label of a host
    # with at least three labels is used
    domain_suffix: Optional[str] = None
    ignored_subdomains: Sequence[str] = DEFAULT_IGNORED_SUBDOMAINS

    # Path prefix resolution
    path_pattern: str = r"^/tenants/([^/]+)(?:/|$)"

    # Query parameter resolution
    query_param: str = "tenant_id"

    custom_resolver: Optional[CustomResolver] = None

    # Fallback options
    default_tenant_id: Optional[str] = None
    auto_create: bool = False

    def __post_init__(self):
        order = []
        for item in self.resolution_order:
            try:
                order.append(TenantResolutionStrategy(item))
            except ValueError:
                raise ValueError(f"Unsupported tenant resolution strategy: {item}")
        self.resolution_order = tuple(order)

    @classmethod
    def from_settings(cls, settings: Any, custom_resolver: Optional[CustomResolver] = None) -> "TenantResolutionConfig":
        """Build from MiddlewareSettings."""
        return cls(
            resolution_order=settings.resolution_order,
            header_name=settings.header_name,
            domain_suffix=settings.domain_suffix,
            path_pattern=settings.path_pattern,
            query_param=settings.query_param,
            custom_resolver=custom_resolver,
            default_tenant_id=settings.default_tenant_id,
            auto_create=settings.auto_create,
        )


@dataclass
class TenantContext:
    """Request-scoped binding of a tenant to its connection."""
    tenant_id: str
    connection: Any
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    start_time: float = field(default_factory=time.time)
    request_data: Optional[Dict[str, Any]] = field(default=None, repr=False, compare=False)

    def get_elapsed_time(self) -> float:
        return time.time() - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "request_id": self.request_id,
            "start_time": self.start_time,
            "elapsed_time": self.get_elapsed_time(),
        }


_current_tenant: ContextVar[Optional[TenantContext]] = ContextVar("tenantdb_current_tenant", default=None)


def get_current_tenant() -> Optional[TenantContext]:
    """Return the tenant context of the request being handled, if any."""
    return _current_tenant.get()


class ITenantResolver(ABC):
    """Interface for tenant resolution strategies."""

    @abstractmethod
    async def resolve_tenant(self, request_data: Dict[str, Any]) -> Optional[str]:
        """Resolve tenant ID from request data."""
        pass


def _get_header(request_data: Dict[str, Any], name: str) -> Optional[str]:
    wanted = name.lower()
    for header, value in (request_data.get("headers") or {}).items():
        if header.lower() == wanted:
            return value
    return None


class HeaderTenantResolver(ITenantResolver):
    """Resolve tenant by HTTP header."""

    def __init__(self, header_name: str):
        self.header_name = header_name

    async def resolve_tenant(self, request_data: Dict[str, Any]) -> Optional[str]:
        value = _get_header(request_data, self.header_name)
        return value.strip() if value else None


class SubdomainTenantResolver(ITenantResolver):
    """Resolve tenant by subdomain extraction."""

    def __init__(self, domain_suffix: Optional[str], ignored: Sequence[str] = DEFAULT_IGNORED_SUBDOMAINS):
        self.domain_suffix = "." + domain_suffix.lower().lstrip(".") if domain_suffix else None
        self.ignored = {name.lower() for name in ignored}

    async def resolve_tenant(self, request_data: Dict[str, Any]) -> Optional[str]:
        host = request_data.get("host") or _get_header(request_data, "host") or ""
        host = host.lower().split(":")[0].strip()
        if not host or host.replace(".", "").isdigit():
            return None

        if self.domain_suffix:
            if not host.endswith(self.domain_suffix):
                return None
            remainder = host[:-len(self.domain_suffix)]
            subdomain = remainder.split(".")[0] if remainder else None
        else:
            labels = host.split(".")
            subdomain = labels[0] if len(labels) >= 3 else None

        if not subdomain or subdomain in self.ignored:
            return None
        return subdomain


class PathPrefixTenantResolver(ITenantResolver):
    """Resolve tenant by path prefix pattern."""

    def __init__(self, path_pattern: str):
        self.path_pattern = re.compile(path_pattern)

    async def resolve_tenant(self, request_data: Dict[str, Any]) -> Optional[str]:
        path = request_data.get("path", "")
        if not path:
            return None

        match = self.path_pattern.match(path)
        return match.group(1) if match else None


class QueryParamTenantResolver(ITenantResolver):
    """Resolve tenant by query parameter."""

    def __init__(self, query_param: str):
        self.query_param = query_param

    async def resolve_tenant(self, request_data: Dict[str, Any]) -> Optional[str]:
        query_string = request_data.get("query_string", "")
        if not query_string:
            return None

        values = urllib.parse.parse_qs(query_string).get(self.query_param, [])
        return values[0].strip() if values else None


class CallableTenantResolver(ITenantResolver):
    """Resolve tenant with a user-supplied sync or async callable."""

    def __init__(self, func: CustomResolver):
        self.func = func

    async def resolve_tenant(self, request_data: Dict[str, Any]) -> Optional[str]:
        result = self.func(request_data)
        if inspect.isawaitable(result):
            result = await result
        return result


class TenantResolver:
    """Multi-strategy tenant resolver; the first non-empty result wins."""

    def __init__(self, config: TenantResolutionConfig):
        self.config = config
        self.resolvers: List[ITenantResolver] = [
            resolver
            for resolver in (self._create_resolver(s) for s in config.resolution_order)
            if resolver is not None
        ]

    def _create_resolver(self, strategy: TenantResolutionStrategy) -> Optional[ITenantResolver]:
        if strategy == TenantResolutionStrategy.HEADER:
            return HeaderTenantResolver(self.config.header_name)
        elif strategy == TenantResolutionStrategy.SUBDOMAIN:
            return SubdomainTenantResolver(self.config.domain_suffix, self.config.ignored_subdomains)
        elif strategy == TenantResolutionStrategy.QUERY_PARAM:
            return QueryParamTenantResolver(self.config.query_param)
        elif strategy == TenantResolutionStrategy.PATH_PREFIX:
            return PathPrefixTenantResolver(self.config.path_pattern)
        elif strategy == TenantResolutionStrategy.CUSTOM:
            if self.config.custom_resolver is None:
                return None
            return CallableTenantResolver(self.config.custom_resolver)
        raise ValueError(f"Unsupported tenant resolution strategy: {strategy}")

    async def resolve(self, request_data: Dict[str, Any]) -> Optional[str]:
        for resolver in self.resolvers:
            try:
                tenant_id = await resolver.resolve_tenant(request_data)
            except Exception as e:
                logger.error(f"Tenant resolution error in {resolver.__class__.__name__}: {e}")
                raise TenantResolutionError(f"Tenant resolution failed: {e}", original_error=e) from e
            if tenant_id:
                return tenant_id

        return self.config.default_tenant_id or None


class TenantMiddleware:
    """
    Tenant-aware middleware for request processing.

    process_request() resolves the tenant and leases its connection;
    finalize_request() releases the lease. tenant_scope() and __call__
    pair the two around a handler.
    """

    def __init__(self, db: Any, resolution_config: Optional[TenantResolutionConfig] = None):
        self.db = db
        self.resolution_config = resolution_config or TenantResolutionConfig()
        self.resolver = TenantResolver(self.resolution_config)

        # Request tracking
        self.active_requests: Dict[str, TenantContext] = {}
        self._tokens: Dict[str, Token] = {}

    async def process_request(self, request_data: Dict[str, Any]) -> TenantContext:
        """
        Resolve the request's tenant and attach its connection.

        Args:
            request_data: Request information (host, headers, path, query_string)

        Returns:
            TenantContext for the request

        Raises:
            TenantResolutionError: If no tenant can be resolved, the id is
                invalid or the tenant's connection cannot be obtained
        """
        tenant_id = await self.resolver.resolve(request_data)
        if not tenant_id:
            raise TenantResolutionError("Tenant ID is required")

        try:
            tenant_id = validate_tenant_id(tenant_id, self.db.config.reserved_tenant_ids)
        except ValidationError as e:
            raise TenantResolutionError(str(e), original_error=e, tenant_id=tenant_id) from e

        connection = await self._acquire(tenant_id)

        context = TenantContext(tenant_id=tenant_id, connection=connection, request_data=request_data)
        request_data[REQUEST_KEY] = context
        self._tokens[context.request_id] = _current_tenant.set(context)
        self.active_requests[context.request_id] = context

        logger.debug(f"Processing request {context.request_id} for tenant {tenant_id}")
        return context

    async def _acquire(self, tenant_id: str) -> Any:
        try:
            try:
                return await self.db.acquire(tenant_id)
            except TenantNotFoundError:
                if not self.resolution_config.auto_create:
                    raise
            await self._auto_create(tenant_id)
            return await self.db.acquire(tenant_id)
        except DatabaseError as e:
            logger.warning(f"Could not bind request to tenant '{tenant_id}': {e}")
            raise TenantResolutionError(
                f"Failed to resolve tenant '{tenant_id}': {e}",
                original_error=e,
                tenant_id=tenant_id,
                status_code=e.status_code
            ) from e

    async def _auto_create(self, tenant_id: str) -> None:
        try:
            await self.db.create_tenant(tenant_id)
            logger.info(f"Auto-created tenant '{tenant_id}'")
        except TenantAlreadyExistsError:
            logger.debug(f"Tenant '{tenant_id}' was created by a concurrent request")

    async def finalize_request(
        self,
        context: TenantContext,
        success: bool = True,
        error: Optional[Exception] = None
    ) -> None:
        """Release the request's connection and clear its tenant context."""
        self.active_requests.pop(context.request_id, None)
        if context.request_data is not None and context.request_data.get(REQUEST_KEY) is context:
            del context.request_data[REQUEST_KEY]

        token = self._tokens.pop(context.request_id, None)
        if token is not None:
            try:
                _current_tenant.reset(token)
            except ValueError:
                # Token belongs to another context; clear ours instead
                _current_tenant.set(None)

        await self.db.release(context.tenant_id, context.connection)

        log_data = {
            "tenant_id": context.tenant_id,
            "request_id": context.request_id,
            "elapsed_time": context.get_elapsed_time(),
            "success": success,
            "error": str(error) if error else None
        }

        if success:
            logger.info("Request completed successfully", extra=log_data)
        else:
            logger.error("Request failed", extra=log_data)

    @asynccontextmanager
    async def tenant_scope(self, request_data: Dict[str, Any]) -> AsyncIterator[TenantContext]:
        context = await self.process_request(request_data)
        error: Optional[Exception] = None
        try:
            yield context
        except Exception as e:
            error = e
            raise
        finally:
            await self.finalize_request(context, success=error is None, error=error)

    async def __call__(
        self,
        request_data: Dict[str, Any],
        call_next: Callable[[Dict[str, Any]], Awaitable[Any]]
    ) -> Any:
        async with self.tenant_scope(request_data):
            return await call_next(request_data)

    def get_middleware_stats(self) -> Dict[str, Any]:
        """Get middleware statistics."""
        tenant_counts: Dict[str, int] = defaultdict(int)
        for context in self.active_requests.values():
            tenant_counts[context.tenant_id] += 1

        return {
            "active_requests": len(self.active_requests),
            "requests_per_tenant": dict(tenant_counts),
            "resolution_order": [s.value for s in self.resolution_config.resolution_order],
        }


def create_middleware(db: Any, config: Optional[TenantResolutionConfig] = None) -> TenantMiddleware:
    """Create a middleware bound to a tenant database."""
    return TenantMiddleware(db, config)


def require_tenant(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
    """Decorator to require tenant context for function execution."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        context = kwargs.get("tenant_context") or get_current_tenant()
        if context is None:
            raise TenantResolutionError("Tenant context required but not provided")
        return await func(*args, **kwargs)

    return wrapper
