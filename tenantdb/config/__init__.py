"""
Configuration Management Module
===============================

Settings loading (YAML file plus environment overrides), validation and
logging setup.
"""

from .config_manager import (
    CacheSettings,
    ConfigManager,
    DatabaseSettings,
    Environment,
    MiddlewareSettings,
    Settings,
    TenantSettings,
    clear_settings,
    configure_logging,
    get_settings,
    init_settings,
)
from .validation import ConfigValidator, ValidationIssue, ValidationResult, validate_config

__all__ = [
    "Settings",
    "DatabaseSettings",
    "TenantSettings",
    "CacheSettings",
    "MiddlewareSettings",
    "Environment",
    "ConfigManager",
    "init_settings",
    "get_settings",
    "clear_settings",
    "configure_logging",
    "ConfigValidator",
    "ValidationIssue",
    "ValidationResult",
    "validate_config",
]
