"""
Base classes and interfaces for the database module.

This module provides the error hierarchy, the immutable connection
configuration, identifier validation and the abstract adapter contract
that every storage client family implements.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
from urllib.parse import urlsplit, urlunsplit
import asyncio
import logging
import re

logger = logging.getLogger(__name__)


TENANT_PLACEHOLDER = "{tenant}"
MAX_IDENTIFIER_LENGTH = 63

TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
SQL_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

# Storage system database names; tenants may not shadow them.
DEFAULT_RESERVED_TENANT_IDS: Tuple[str, ...] = (
    "postgres", "template0", "template1", "admin", "config", "local"
)


class DatabaseError(Exception):
    """Base exception for database operations."""

    status_code = 500

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        tenant_id: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message)
        self.original_error = original_error
        self.tenant_id = tenant_id
        if status_code is not None:
            self.status_code = status_code
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a response-friendly dictionary."""
        result = {
            "error": self.__class__.__name__,
            "message": str(self),
            "status_code": self.status_code,
        }
        if self.tenant_id is not None:
            result["tenant_id"] = self.tenant_id
        return result


class ConfigurationError(DatabaseError):
    """Exception raised for configuration issues."""
    pass


class ConnectionError(DatabaseError):
    """Exception raised for database connection issues."""
    status_code = 503


class QueryError(DatabaseError):
    """Exception raised for query execution issues."""
    pass


class ValidationError(DatabaseError):
    """Exception raised for invalid tenant ids and identifiers."""
    status_code = 400


class TenantNotFoundError(DatabaseError):
    """Raised when a tenant's storage does not exist."""
    status_code = 404


class TenantAlreadyExistsError(DatabaseError):
    """Raised when creating a tenant whose storage already exists."""
    status_code = 409


class TenantResolutionError(DatabaseError):
    """Raised when a request cannot be bound to a tenant."""
    status_code = 400


class AdapterType(Enum):
    """Storage client families."""
    RELATIONAL = "relational"
    DOCUMENT = "document"


class StrategyType(Enum):
    """Tenant isolation strategies."""
    ROW = "row"
    DATABASE = "database"


def _coerce_enum(enum_cls, value, label: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"Invalid {label} '{value}'. Expected one of: {allowed}")


def validate_tenant_id(tenant_id: Any, reserved: Iterable[str] = ()) -> str:
    """
    Validate a tenant identifier.

    Args:
        tenant_id: Candidate tenant identifier
        reserved: Identifiers that may not be used as tenants

    Returns:
        The validated tenant identifier

    Raises:
        ValidationError: If the identifier is empty, malformed, too long or reserved
    """
    if not isinstance(tenant_id, str) or not tenant_id:
        raise ValidationError("Tenant ID must be a non-empty string")

    if not TENANT_ID_PATTERN.match(tenant_id):
        raise ValidationError(
            f"Invalid tenant ID '{tenant_id}': only letters, digits, '_' and '-' are allowed",
            tenant_id=tenant_id
        )

    if len(tenant_id) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f"Tenant ID too long: {len(tenant_id)} characters (max {MAX_IDENTIFIER_LENGTH})",
            tenant_id=tenant_id
        )

    if tenant_id.lower() in {name.lower() for name in reserved}:
        raise ValidationError(f"Tenant ID '{tenant_id}' is reserved", tenant_id=tenant_id)

    return tenant_id


def validate_database_name(name: Any) -> str:
    """Validate a logical database name before it reaches an admin command."""
    if not isinstance(name, str) or not name:
        raise ValidationError("Database name must be a non-empty string")
    if not TENANT_ID_PATTERN.match(name):
        raise ValidationError(f"Invalid database name '{name}'")
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f"Database name too long: {len(name)} characters (max {MAX_IDENTIFIER_LENGTH})"
        )
    return name


def validate_identifier(name: Any, kind: str = "identifier") -> str:
    """Validate a table, column or field name supplied by the caller."""
    if not isinstance(name, str) or not SQL_IDENTIFIER_PATTERN.match(name):
        raise ValidationError(f"Invalid {kind}: {name!r}")
    return name


def quote_identifier(name: str) -> str:
    """Quote a (possibly schema-qualified) SQL identifier."""
    return ".".join('"' + part.replace('"', '""') + '"' for part in name.split("."))


def mask_url(url: str) -> str:
    """Hide the password of a connection URL for logs and diagnostics."""
    parts = urlsplit(url)
    if not parts.password:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


@dataclass(frozen=True)
class DatabaseConfig:
    """Immutable configuration for a tenant-aware database."""
    url: str
    strategy: Optional[StrategyType] = None
    adapter: Optional[AdapterType] = None
    tenant_field: str = "tenant_id"
    database_prefix: str = "tenant_"
    reserved_tenant_ids: Tuple[str, ...] = DEFAULT_RESERVED_TENANT_IDS

    # Connection cache policy
    max_connections: Optional[int] = 100
    idle_timeout: Optional[float] = 600.0
    max_age: Optional[float] = None

    # Passed through to the storage client constructor
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "strategy", _coerce_enum(StrategyType, self.strategy, "strategy"))
        object.__setattr__(self, "adapter", _coerce_enum(AdapterType, self.adapter, "adapter"))
        object.__setattr__(self, "reserved_tenant_ids", tuple(self.reserved_tenant_ids))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))

    @property
    def scheme(self) -> str:
        if not isinstance(self.url, str):
            return ""
        return urlsplit(self.url).scheme.lower()

    def with_overrides(self, **changes) -> "DatabaseConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary with the URL password masked."""
        return {
            "url": mask_url(self.url) if isinstance(self.url, str) else self.url,
            "strategy": self.strategy.value if self.strategy else None,
            "adapter": self.adapter.value if self.adapter else None,
            "tenant_field": self.tenant_field,
            "database_prefix": self.database_prefix,
            "reserved_tenant_ids": list(self.reserved_tenant_ids),
            "max_connections": self.max_connections,
            "idle_timeout": self.idle_timeout,
            "max_age": self.max_age,
            "options": dict(self.options),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConfig":
        """Create config from dictionary, ignoring unknown keys."""
        known = {f for f in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown database config keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


class BaseAdapter(ABC):
    """
    Abstract base class for storage client adapters.

    An adapter owns the raw clients of one storage family. It knows how to
    open and close them, run administrative commands, and wrap a client so
    that every operation through the wrapper is confined to one tenant.
    """

    adapter_type: AdapterType
    provider_schemes: Dict[str, str] = {}
    system_database: str = ""
    system_databases: Tuple[str, ...] = ()

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._clients: Dict[str, Any] = {}
        self._connect_lock = asyncio.Lock()
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def url(self) -> str:
        return self.config.url

    @property
    def tenant_field(self) -> str:
        return self.config.tenant_field

    @property
    def is_connected(self) -> bool:
        return bool(self._clients)

    @property
    def default_url(self) -> str:
        """URL used by connect() when no target is given."""
        database = urlsplit(self.url).path.lstrip("/")
        if TENANT_PLACEHOLDER in self.url or not database:
            return self.build_database_url(self.system_database)
        return self.url

    def build_database_url(self, name: str) -> str:
        """
        Derive the URL of a logical database from the configured URL.

        A ``{tenant}`` placeholder is substituted when present; otherwise
        the URL path is replaced with the database name.
        """
        if TENANT_PLACEHOLDER in self.url:
            return self.url.replace(TENANT_PLACEHOLDER, name)
        parts = urlsplit(self.url)
        return urlunsplit((parts.scheme, parts.netloc, f"/{name}", parts.query, parts.fragment))

    def detect_provider(self) -> str:
        """Identify the storage provider from the URL scheme."""
        scheme = urlsplit(self.url).scheme.lower()
        provider = self.provider_schemes.get(scheme)
        if provider is None:
            raise ConfigurationError(
                f"Unsupported URL scheme '{scheme}' for {self.__class__.__name__}"
            )
        return provider

    async def connect(self, url: Optional[str] = None) -> Any:
        """
        Return the live client for a target URL, opening it on first use.

        Args:
            url: Target URL, defaults to ``default_url``

        Returns:
            The storage client
        """
        target = url or self.default_url
        client = self._clients.get(target)
        if client is not None:
            return client

        async with self._connect_lock:
            client = self._clients.get(target)
            if client is None:
                client = await self.create_client(target)
                self._clients[target] = client
                self.logger.info(f"Connected to {self.detect_provider()} at {mask_url(target)}")
        return client

    async def disconnect(self) -> None:
        """Close every client opened through connect(). Safe to call repeatedly."""
        clients = list(self._clients.items())
        self._clients.clear()

        for target, client in clients:
            try:
                await self.close_client(client)
                self.logger.info(f"Disconnected from {mask_url(target)}")
            except Exception as e:
                self.logger.warning(f"Error while closing client for {mask_url(target)}: {e}")

    async def create_client(self, url: str) -> Any:
        """
        Open a new, independent client for a target URL.

        Raises:
            ConfigurationError: If the target is malformed
            ConnectionError: If the storage cannot be reached
        """
        provider = self.detect_provider()
        try:
            return await self._open(url)
        except DatabaseError:
            raise
        except Exception as e:
            self.logger.error(f"Failed to connect to {provider} at {mask_url(url)}: {e}")
            raise ConnectionError(f"{provider} connection failed: {e}", original_error=e) from e

    async def create_database(self, name: str) -> None:
        """Create a logical database."""
        validate_database_name(name)
        await self._create_database(name)
        self.logger.info(f"Created database '{name}'")

    async def drop_database(self, name: str) -> None:
        """Drop a logical database."""
        validate_database_name(name)
        await self._drop_database(name)
        self.logger.info(f"Dropped database '{name}'")

    @abstractmethod
    async def _open(self, url: str) -> Any:
        """Open and verify a raw client."""
        pass

    @abstractmethod
    async def close_client(self, client: Any) -> None:
        """Close a raw client."""
        pass

    @abstractmethod
    async def ping(self, client: Any) -> None:
        """Round-trip to the storage through a client."""
        pass

    @abstractmethod
    async def execute_query(self, query: Any, *params: Any) -> Any:
        """Pass a raw query through the default client."""
        pass

    @abstractmethod
    async def _create_database(self, name: str) -> None:
        pass

    @abstractmethod
    async def _drop_database(self, name: str) -> None:
        pass

    @abstractmethod
    async def list_databases(self) -> List[str]:
        """List logical databases, excluding system databases."""
        pass

    @abstractmethod
    def apply_tenant_middleware(self, client: Any, tenant_id: str) -> Any:
        """Wrap a client so every operation is confined to one tenant."""
        pass

    @abstractmethod
    async def distinct_tenants(self) -> Set[str]:
        """Distinct tenant values stored in tenant-bearing structures."""
        pass

    @abstractmethod
    async def tenant_has_data(self, tenant_id: str) -> bool:
        pass

    @abstractmethod
    async def purge_tenant(self, tenant_id: str) -> int:
        """Remove a tenant's rows from every tenant-bearing structure."""
        pass


ConfigInput = Union[DatabaseConfig, Dict[str, Any], None]
