"""
Shared configuration management for the layout entitlement service.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="LAYOUT_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"
    log_json: bool = True

    # Backing store
    store_backend: str = "postgres"
    postgres_dsn: str = "postgres://localhost:5432/layout"
    postgres_min_pool_size: int = 2
    postgres_max_pool_size: int = 10
    postgres_command_timeout: float = 30.0

    # Cache tiers
    preference_cache_ttl_seconds: int = 4 * 3600
    preference_cache_max_entries: int = 10000
    template_cache_ttl_seconds: int = 3600
    template_cache_max_entries: int = 1000
    override_cache_ttl_seconds: int = 30 * 60
    override_cache_max_entries: int = 5000

    # Resolution
    preference_expiry_hours: int = 4
    write_back_preferences: bool = True

    # Maintenance
    maintenance_interval_seconds: int = 300
    audit_retention_days: int = 90
    enable_maintenance: bool = True


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
