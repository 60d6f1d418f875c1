"""
Tests for settings loading, environment overrides and validation.
"""

import logging

import pytest
import yaml

from tenantdb.config.config_manager import (
    ConfigManager,
    Environment,
    Settings,
    DatabaseSettings,
    clear_settings,
    configure_logging,
    get_settings,
    init_settings,
)
from tenantdb.config.validation import ConfigValidator, validate_config
from tenantdb.database.base import AdapterType, ConfigurationError, StrategyType
from tenantdb.database.factory import create_db
from tenantdb.tenancy.strategies import DatabaseStrategy


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    for name in ("TENANTDB_CONFIG", "TENANTDB_DB_URL", "TENANTDB_STRATEGY", "DATABASE_URL", "ENVIRONMENT"):
        monkeypatch.delenv(name, raising=False)
    clear_settings()
    yield
    clear_settings()


@pytest.fixture
def write_config(tmp_path):
    def write(data):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump(data))
        return str(path)
    return write


class TestConfigManager:
    """Test configuration loading."""

    def test_load_yaml_file(self, write_config):
        path = write_config({
            "environment": "staging",
            "database": {"url": "postgres://db.internal/{tenant}", "pool_size": 25},
            "tenant": {"field_name": "org_id", "database_prefix": "org_"},
            "cache": {"max_connections": 50, "idle_timeout": 120},
        })

        settings = ConfigManager(path, environ={}).settings

        assert settings.environment == Environment.STAGING
        assert settings.database.url == "postgres://db.internal/{tenant}"
        assert settings.database.pool_size == 25
        assert settings.tenant.field_name == "org_id"
        assert settings.cache.max_connections == 50
        assert settings.middleware.header_name == "X-Tenant-ID"

    def test_environment_overrides_file(self, write_config):
        path = write_config({"database": {"url": "postgres://localhost/app", "pool_size": 5}})
        environ = {
            "TENANTDB_DB_URL": "mongodb://mongo/app",
            "TENANTDB_POOL_SIZE": "20",
            "TENANTDB_AUTO_CREATE": "true",
            "TENANTDB_DEFAULT_TENANT": "public",
        }

        settings = ConfigManager(path, environ=environ).settings

        assert settings.database.url == "mongodb://mongo/app"
        assert settings.database.pool_size == 20
        assert settings.middleware.auto_create is True
        assert settings.middleware.default_tenant_id == "public"

    def test_database_url_fallback(self):
        settings = ConfigManager(environ={"DATABASE_URL": "postgres://localhost/app"}).settings
        assert settings.database.url == "postgres://localhost/app"

    def test_tenantdb_url_wins_over_database_url(self):
        environ = {"TENANTDB_DB_URL": "postgres://primary/app", "DATABASE_URL": "postgres://fallback/app"}
        assert ConfigManager(environ=environ).settings.database.url == "postgres://primary/app"

    def test_config_path_from_environment(self, write_config):
        path = write_config({"database": {"url": "postgres://from-file/app"}})
        settings = ConfigManager(environ={"TENANTDB_CONFIG": path}).settings
        assert settings.database.url == "postgres://from-file/app"

    def test_missing_url(self):
        with pytest.raises(ConfigurationError, match="Database URL is required"):
            ConfigManager(environ={})

    def test_all_errors_are_reported(self, write_config):
        path = write_config({
            "database": {"url": "mysql://localhost/app", "pool_size": 500},
            "tenant": {"field_name": "tenant id"},
        })

        with pytest.raises(ConfigurationError) as exc_info:
            ConfigManager(path, environ={})

        errors = exc_info.value.metadata["errors"]
        assert len(errors) == 3
        assert any(e.startswith("database.url") for e in errors)
        assert any(e.startswith("database.pool_size") for e in errors)
        assert any(e.startswith("tenant.field_name") for e in errors)

    def test_non_numeric_environment_value(self):
        environ = {"TENANTDB_DB_URL": "postgres://localhost/app", "TENANTDB_POOL_SIZE": "many"}
        with pytest.raises(ConfigurationError, match="database.pool_size"):
            ConfigManager(environ=environ)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            ConfigManager(str(tmp_path / "absent.yaml"), environ={})

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("database: [unclosed")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            ConfigManager(str(path), environ={})

    def test_unknown_setting(self, write_config):
        path = write_config({"database": {"url": "postgres://localhost/app", "colour": "blue"}})
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            ConfigManager(path, environ={})


class TestSettingsLifecycle:
    """Test explicit process-wide settings state."""

    def test_init_get_clear(self, monkeypatch):
        settings = init_settings(environ={"TENANTDB_DB_URL": "postgres://localhost/app"})
        assert get_settings() is settings

        clear_settings()
        monkeypatch.setenv("TENANTDB_DB_URL", "postgres://reloaded/app")

        reloaded = get_settings()
        assert reloaded is not settings
        assert reloaded.database.url == "postgres://reloaded/app"

    def test_create_db_uses_loaded_settings(self):
        init_settings(environ={"TENANTDB_DB_URL": "postgres://localhost/{tenant}"})

        db = create_db()

        assert isinstance(db.strategy, DatabaseStrategy)
        assert db.config.url == "postgres://localhost/{tenant}"

    def test_create_db_without_url(self):
        with pytest.raises(ConfigurationError):
            create_db()


class TestSettings:
    """Test conversion of settings to a DatabaseConfig."""

    def test_relational_pool_options(self):
        settings = Settings(database=DatabaseSettings(url="postgres://localhost/app", pool_size=7, strategy="row"))
        config = settings.to_database_config()

        assert config.strategy == StrategyType.ROW
        assert config.options["max_size"] == 7
        assert config.options["timeout"] == 10.0
        assert "postgres" in config.reserved_tenant_ids

    def test_document_pool_options(self):
        settings = Settings(database=DatabaseSettings(
            url="mongodb://localhost/app", adapter="document", options={"tls": True}
        ))
        config = settings.to_database_config()

        assert config.adapter == AdapterType.DOCUMENT
        assert config.options["maxPoolSize"] == 10
        assert config.options["connectTimeoutMS"] == 10000
        assert config.options["tls"] is True

    def test_to_dict(self):
        data = Settings(environment=Environment.PRODUCTION).to_dict()

        assert data["environment"] == "production"
        assert data["cache"]["idle_timeout"] == 600.0


class TestConfigValidator:
    """Test settings validation rules."""

    def test_valid_settings(self):
        result = validate_config({"database": {"url": "postgres://localhost/app"}})
        assert result.is_valid
        assert result.get_summary().startswith("Configuration valid")

    def test_adapter_scheme_mismatch(self):
        result = validate_config({"database": {"url": "postgres://localhost/app", "adapter": "document"}})
        assert not result.is_valid
        assert str(result.errors[0]).startswith("database.adapter")

    def test_row_strategy_placeholder(self):
        result = validate_config({"database": {"url": "postgres://localhost/{tenant}", "strategy": "row"}})
        assert not result.is_valid

    def test_unknown_resolution_strategy(self):
        result = validate_config({
            "database": {"url": "postgres://localhost/app"},
            "middleware": {"resolution_order": ["header", "cookie"]},
        })
        assert [str(e) for e in result.errors] == [
            "middleware.resolution_order: Unknown resolution strategy 'cookie'"
        ]

    def test_cache_limits(self):
        result = validate_config({
            "database": {"url": "postgres://localhost/app"},
            "cache": {"max_connections": 0, "idle_timeout": None},
        })
        assert len(result.errors) == 1

    def test_production_warnings(self):
        result = ConfigValidator.validate_settings({
            "environment": "production",
            "database": {"url": "postgres://localhost/app"},
        })

        assert result.is_valid
        assert len(result.warnings) == 2

    def test_production_with_ssl(self):
        result = ConfigValidator.validate_settings({
            "environment": "production",
            "database": {"url": "postgres://db.internal/app?sslmode=require"},
        })
        assert result.warnings == []


class TestConfigureLogging:
    def test_sets_root_level(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        try:
            configure_logging("debug")
            assert root.level == logging.DEBUG
        finally:
            root.handlers[:] = handlers
            root.setLevel(level)
