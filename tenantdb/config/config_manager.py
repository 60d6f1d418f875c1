"""
Configuration Manager
=====================

Settings for tenantdb loaded from an optional YAML file with environment
variable overrides on top, validated once and kept as explicit
process-scoped state (init_settings / get_settings / clear_settings).
"""

import os
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from ..database.base import (
    DEFAULT_RESERVED_TENANT_IDS,
    AdapterType,
    ConfigurationError,
    DatabaseConfig,
)
from .validation import KNOWN_SCHEMES, ConfigValidator

logger = logging.getLogger(__name__)


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONFIG_PATH_ENV = "TENANTDB_CONFIG"

# setting path -> (environment variable, type)
ENV_OVERRIDES = {
    "database.url": ("TENANTDB_DB_URL", str),
    "database.strategy": ("TENANTDB_STRATEGY", str),
    "database.adapter": ("TENANTDB_ADAPTER", str),
    "database.pool_size": ("TENANTDB_POOL_SIZE", int),
    "database.connect_timeout": ("TENANTDB_CONNECT_TIMEOUT", float),
    "tenant.field_name": ("TENANTDB_TENANT_FIELD", str),
    "tenant.database_prefix": ("TENANTDB_DATABASE_PREFIX", str),
    "cache.max_connections": ("TENANTDB_MAX_CONNECTIONS", int),
    "cache.idle_timeout": ("TENANTDB_IDLE_TIMEOUT", float),
    "middleware.header_name": ("TENANTDB_TENANT_HEADER", str),
    "middleware.default_tenant_id": ("TENANTDB_DEFAULT_TENANT", str),
    "middleware.auto_create": ("TENANTDB_AUTO_CREATE", bool),
    "environment": ("ENVIRONMENT", str),
}


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Install the standard log format on the root logger."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)


class Environment(Enum):
    """Environment types for configuration."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


@dataclass
class DatabaseSettings:
    """Connection settings."""
    url: str = ""
    strategy: Optional[str] = None
    adapter: Optional[str] = None
    pool_size: int = 10
    connect_timeout: float = 10.0
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TenantSettings:
    field_name: str = "tenant_id"
    database_prefix: str = "tenant_"
    reserved_ids: List[str] = field(default_factory=lambda: list(DEFAULT_RESERVED_TENANT_IDS))


@dataclass
class CacheSettings:
    """Connection cache policy. None disables a limit."""
    max_connections: Optional[int] = 100
    idle_timeout: Optional[float] = 600.0
    max_age: Optional[float] = None


@dataclass
class MiddlewareSettings:
    """Request tenant resolution settings."""
    resolution_order: List[str] = field(default_factory=lambda: ["header", "subdomain", "custom"])
    header_name: str = "X-Tenant-ID"
    domain_suffix: Optional[str] = None
    path_pattern: str = r"^/tenants/([^/]+)(?:/|$)"
    query_param: str = "tenant_id"
    default_tenant_id: Optional[str] = None
    auto_create: bool = False


@dataclass
class Settings:
    """Complete tenantdb settings."""
    environment: Environment = Environment.DEVELOPMENT
    app_name: str = "tenantdb"
    log_level: str = "INFO"

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    tenant: TenantSettings = field(default_factory=TenantSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    middleware: MiddlewareSettings = field(default_factory=MiddlewareSettings)

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary."""
        data = asdict(self)
        data["environment"] = self.environment.value
        return data

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    def to_database_config(self) -> DatabaseConfig:
        """Build the DatabaseConfig consumed by create_db()."""
        db = self.database
        family = KNOWN_SCHEMES.get(db.url.split("://", 1)[0].lower()) if db.url else None

        if family == AdapterType.DOCUMENT:
            options: Dict[str, Any] = {
                "maxPoolSize": db.pool_size,
                "connectTimeoutMS": int(db.connect_timeout * 1000),
                "serverSelectionTimeoutMS": int(db.connect_timeout * 1000),
            }
        else:
            options = {"max_size": db.pool_size, "timeout": db.connect_timeout}
        options.update(db.options)

        return DatabaseConfig(
            url=db.url,
            strategy=db.strategy,
            adapter=db.adapter,
            tenant_field=self.tenant.field_name,
            database_prefix=self.tenant.database_prefix,
            reserved_tenant_ids=tuple(self.tenant.reserved_ids),
            max_connections=self.cache.max_connections,
            idle_timeout=self.cache.idle_timeout,
            max_age=self.cache.max_age,
            options=options,
        )


def _parse_env_value(raw: str, kind: type) -> Any:
    if kind is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if kind in (int, float):
        try:
            return kind(raw)
        except ValueError:
            # Left as-is so validation reports it with its setting path
            return raw
    return raw


class ConfigManager:
    """
    Loads, merges and validates tenantdb settings.

    Precedence: environment variables over the YAML file over defaults.
    """

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ
        self.config_path = config_path or self._find_config_path()
        self._settings: Optional[Settings] = None

        self.load_config()

    def _find_config_path(self) -> Optional[str]:
        """Find configuration file path based on environment."""
        explicit = self.environ.get(CONFIG_PATH_ENV)
        if explicit:
            return explicit

        env = self.environ.get("ENVIRONMENT", "development")
        config_dir = Path(__file__).parent

        # Try environment-specific config first
        env_config = config_dir / f"settings.{env}.yaml"
        if env_config.exists():
            return str(env_config)

        default_config = config_dir / "settings.yaml"
        if default_config.exists():
            return str(default_config)

        return None

    def _read_file(self) -> Dict[str, Any]:
        if not self.config_path:
            return {}

        path = Path(self.config_path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}", original_error=e) from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")
        return data

    def load_config(self) -> Settings:
        """
        Load configuration from file and environment.

        Raises:
            ConfigurationError: Listing every validation error found
        """
        config_data = self._read_file()
        config_data = self._merge_environment_variables(config_data)

        result = ConfigValidator.validate_settings(config_data)
        for warning in result.warnings:
            logger.warning(f"Configuration warning: {warning}")
        if not result.is_valid:
            details = "; ".join(str(error) for error in result.errors)
            raise ConfigurationError(f"{result.get_summary()} {details}", errors=[str(e) for e in result.errors])

        self._settings = self._create_settings_from_dict(config_data)
        logger.info(f"Configuration loaded from {self.config_path or 'environment'}")
        return self._settings

    def _merge_environment_variables(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge environment variables with configuration data."""
        for config_path, (env_var, kind) in ENV_OVERRIDES.items():
            env_value = self.environ.get(env_var)
            if env_value:
                self._set_nested_value(config_data, config_path, _parse_env_value(env_value, kind))

        # DATABASE_URL is the conventional fallback
        database = config_data.get("database") or {}
        if not database.get("url") and self.environ.get("DATABASE_URL"):
            self._set_nested_value(config_data, "database.url", self.environ["DATABASE_URL"])

        return config_data

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: Any):
        """Set nested dictionary value using dot notation."""
        keys = path.split(".")
        current = data

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _create_settings_from_dict(self, config_data: Dict[str, Any]) -> Settings:
        """Create Settings object from configuration dictionary."""
        settings_dict: Dict[str, Any] = {}

        try:
            settings_dict["environment"] = Environment(config_data.get("environment", "development"))
            settings_dict["app_name"] = config_data.get("app_name", "tenantdb")
            settings_dict["log_level"] = config_data.get("log_level", "INFO")

            if "database" in config_data:
                settings_dict["database"] = DatabaseSettings(**config_data["database"])
            if "tenant" in config_data:
                settings_dict["tenant"] = TenantSettings(**config_data["tenant"])
            if "cache" in config_data:
                settings_dict["cache"] = CacheSettings(**config_data["cache"])
            if "middleware" in config_data:
                settings_dict["middleware"] = MiddlewareSettings(**config_data["middleware"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}", original_error=e) from e

        return Settings(**settings_dict)

    @property
    def settings(self) -> Settings:
        """Get current settings."""
        if self._settings is None:
            self.load_config()
        return self._settings


_settings: Optional[Settings] = None


def init_settings(config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load and validate settings, replacing any previously loaded ones."""
    global _settings
    _settings = ConfigManager(config_path, environ).settings
    return _settings


def get_settings() -> Settings:
    """Get current settings, loading them on first use."""
    if _settings is None:
        return init_settings()
    return _settings


def clear_settings() -> None:
    """Forget loaded settings; the next get_settings() reloads them."""
    global _settings
    _settings = None
