"""Configuration management for the proxy fulfillment service.

This module handles all configuration loading and validation using Pydantic BaseSettings.
Configuration is loaded from environment variables and .env files.
"""

from .config import (
    ApplicationConfig,
    DeviceApiConfig,
    MonitoringConfig,
    PaymentsConfig,
    QuotaConfig,
    RedisConfig,
    SecurityConfig,
    ServerConfig,
    str_to_bool,
)


def load_config() -> ApplicationConfig:
    """Load and validate application configuration."""
    return ApplicationConfig()


__all__ = [
    "ApplicationConfig",
    "ServerConfig",
    "RedisConfig",
    "DeviceApiConfig",
    "PaymentsConfig",
    "QuotaConfig",
    "MonitoringConfig",
    "SecurityConfig",
    "load_config",
    "str_to_bool",
]
