"""
Configuration Validation System
==============================

Validation for tenantdb settings with detailed error reporting. All
problems are collected before reporting, so a misconfigured deployment
sees every error at once.
"""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass
from urllib.parse import parse_qs, urlsplit
import logging

from ..database.base import (
    SQL_IDENTIFIER_PATTERN,
    TENANT_ID_PATTERN,
    TENANT_PLACEHOLDER,
    AdapterType,
    StrategyType,
)

logger = logging.getLogger(__name__)


KNOWN_SCHEMES = {
    "postgres": AdapterType.RELATIONAL,
    "postgresql": AdapterType.RELATIONAL,
    "postgresql+asyncpg": AdapterType.RELATIONAL,
    "mongodb": AdapterType.DOCUMENT,
    "mongodb+srv": AdapterType.DOCUMENT,
}


@dataclass
class ValidationIssue:
    """Validation problem details."""
    field_path: str
    message: str
    severity: str = "error"  # error, warning
    suggested_value: Optional[Any] = None

    def __str__(self) -> str:
        return f"{self.field_path}: {self.message}"


class ValidationResult:
    """Result of configuration validation."""

    def __init__(self):
        self.errors: List[ValidationIssue] = []
        self.warnings: List[ValidationIssue] = []
        self.is_valid = True

    def add_error(self, field_path: str, message: str, suggested_value: Optional[Any] = None):
        """Add validation error."""
        self.errors.append(ValidationIssue(field_path, message, "error", suggested_value))
        self.is_valid = False

    def add_warning(self, field_path: str, message: str):
        """Add validation warning."""
        self.warnings.append(ValidationIssue(field_path, message, "warning"))

    def get_summary(self) -> str:
        """Get validation summary."""
        if self.is_valid:
            return f"Configuration valid. {len(self.warnings)} warnings."
        return f"Configuration invalid. {len(self.errors)} errors, {len(self.warnings)} warnings."


class ConfigValidator:
    """Static validators for each settings section."""

    @staticmethod
    def validate_range(
        value: Any,
        field_path: str,
        result: ValidationResult,
        minimum: float,
        maximum: float
    ):
        """Validate a numeric value within an inclusive range."""
        try:
            number = float(value)
        except (ValueError, TypeError):
            result.add_error(field_path, f"Invalid numeric value: {value!r}")
            return
        if not (minimum <= number <= maximum):
            result.add_error(field_path, f"Value {value} is out of valid range ({minimum:g}-{maximum:g})")

    @staticmethod
    def validate_database_url(url: Any, field_path: str, result: ValidationResult):
        """Validate a connection URL's scheme and host."""
        if not url:
            result.add_error(field_path, "Database URL is required (set TENANTDB_DB_URL or DATABASE_URL)")
            return
        if not isinstance(url, str):
            result.add_error(field_path, f"Database URL must be a string, got {type(url).__name__}")
            return

        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme not in KNOWN_SCHEMES:
            result.add_error(
                field_path,
                f"Unsupported URL scheme '{scheme}'. Expected one of: {sorted(KNOWN_SCHEMES)}"
            )
        if not parts.netloc:
            result.add_error(field_path, "Database URL must include a host")

    @staticmethod
    def validate_choice(value: Any, enum_cls, field_path: str, result: ValidationResult):
        if value is None:
            return
        allowed = [member.value for member in enum_cls]
        if str(value).lower() not in allowed:
            result.add_error(field_path, f"Invalid value '{value}'. Expected one of: {allowed}")

    @classmethod
    def validate_database_config(cls, config: Dict[str, Any], result: ValidationResult):
        """Validate the database section."""
        url = config.get("url")
        cls.validate_database_url(url, "database.url", result)
        cls.validate_choice(config.get("strategy"), StrategyType, "database.strategy", result)
        cls.validate_choice(config.get("adapter"), AdapterType, "database.adapter", result)
        cls.validate_range(config.get("pool_size", 10), "database.pool_size", result, 1, 100)
        cls.validate_range(config.get("connect_timeout", 10), "database.connect_timeout", result, 1, 60)

        if isinstance(url, str) and url:
            scheme = urlsplit(url).scheme.lower()
            adapter = config.get("adapter")
            if adapter and scheme in KNOWN_SCHEMES and KNOWN_SCHEMES[scheme].value != str(adapter).lower():
                result.add_error("database.adapter", f"Adapter '{adapter}' does not match URL scheme '{scheme}'")

            strategy = str(config.get("strategy") or "").lower()
            if strategy == StrategyType.ROW.value and TENANT_PLACEHOLDER in url:
                result.add_error("database.url", f"Row strategy cannot use a '{TENANT_PLACEHOLDER}' placeholder")

    @staticmethod
    def validate_tenant_config(config: Dict[str, Any], result: ValidationResult):
        """Validate the tenant section."""
        field_name = config.get("field_name", "tenant_id")
        if not isinstance(field_name, str) or not SQL_IDENTIFIER_PATTERN.match(field_name) or "." in field_name:
            result.add_error("tenant.field_name", f"Invalid tenant field name: {field_name!r}")

        prefix = config.get("database_prefix", "tenant_")
        if prefix and not TENANT_ID_PATTERN.match(prefix):
            result.add_error("tenant.database_prefix", f"Invalid database prefix: {prefix!r}")

        reserved = config.get("reserved_ids", [])
        if not isinstance(reserved, (list, tuple)):
            result.add_error("tenant.reserved_ids", "Reserved ids must be a list")

    @classmethod
    def validate_cache_config(cls, config: Dict[str, Any], result: ValidationResult):
        """Validate the cache section."""
        for key in ("max_connections", "idle_timeout", "max_age"):
            value = config.get(key)
            if value is not None:
                cls.validate_range(value, f"cache.{key}", result, 1, float("inf"))

    @staticmethod
    def validate_middleware_config(config: Dict[str, Any], result: ValidationResult):
        """Validate the middleware section."""
        allowed = {"header", "subdomain", "query_param", "path_prefix", "custom"}
        for item in config.get("resolution_order", []):
            if item not in allowed:
                result.add_error("middleware.resolution_order", f"Unknown resolution strategy '{item}'")

        default_tenant = config.get("default_tenant_id")
        if default_tenant and not TENANT_ID_PATTERN.match(str(default_tenant)):
            result.add_error("middleware.default_tenant_id", f"Invalid tenant id: {default_tenant!r}")

    @classmethod
    def validate_settings(cls, settings_dict: Dict[str, Any]) -> ValidationResult:
        """
        Validate complete settings configuration.

        Args:
            settings_dict: Settings as a nested dictionary

        Returns:
            ValidationResult with errors and warnings
        """
        result = ValidationResult()

        cls.validate_database_config(settings_dict.get("database", {}), result)
        cls.validate_tenant_config(settings_dict.get("tenant", {}), result)
        cls.validate_cache_config(settings_dict.get("cache", {}), result)
        cls.validate_middleware_config(settings_dict.get("middleware", {}), result)

        if settings_dict.get("environment") == "production":
            cls._validate_production_requirements(settings_dict, result)

        logger.debug(result.get_summary())
        return result

    @staticmethod
    def _validate_production_requirements(settings_dict: Dict[str, Any], result: ValidationResult):
        """Validate production-specific requirements."""
        url = settings_dict.get("database", {}).get("url") or ""
        if not isinstance(url, str):
            return
        parts = urlsplit(url)
        if parts.scheme.lower().startswith("postgres"):
            sslmode = parse_qs(parts.query).get("sslmode", [""])[0]
            if sslmode in ("", "disable", "allow", "prefer"):
                result.add_warning("database.url", "SSL is not required for the production database connection")
        if parts.hostname in ("localhost", "127.0.0.1"):
            result.add_warning("database.url", "Production database points at localhost")


def validate_config(settings_dict: Dict[str, Any]) -> ValidationResult:
    """Validate a settings dictionary."""
    return ConfigValidator.validate_settings(settings_dict)
