"""Configuration classes for the proxy fulfillment service.

This module contains all configuration classes organized by domain.
Configuration is loaded from environment variables and .env files.
"""

import re
from typing import Annotated, Any, List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_WEBHOOK_IPS = [
    "51.75.77.69",
    "138.201.172.58",
    "65.21.158.36",
    "52.49.219.70",
    "54.229.170.212",
    "52.208.91.102",
    "54.171.196.196",
    "52.213.104.34",
    "3.248.168.21",
]


def str_to_bool(value: Any) -> bool:
    """Convert various string representations to boolean values.

    Examples:
        >>> str_to_bool("true")
        True
        >>> str_to_bool("0")
        False
        >>> str_to_bool("enabled")
        True
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes", "on", "enabled")
    return bool(value)


def _validate_http_url(value: str, name: str) -> str:
    if not value.startswith(("http://", "https://")):
        raise ValueError(f"{name} must start with http:// or https://")
    return value.rstrip("/")


class ServerConfig(BaseSettings):
    """Server configuration settings."""

    app_name: str = "Proxy Fulfillment Service"
    app_version: str = "1.0.0"
    debug: bool = False

    server_port: int = Field(default=8081, alias="SERVER_PORT")
    server_host: str = Field(default="0.0.0.0", alias="SERVER_HOST")
    public_base_url: str = Field(default="http://localhost:8081", alias="PUBLIC_BASE_URL")

    @field_validator("public_base_url")
    @classmethod
    def validate_public_base_url(cls, v: str) -> str:
        """Ensure the public URL is usable for provider callbacks."""
        return _validate_http_url(v, "public_base_url")


class RedisConfig(BaseSettings):
    """Redis configuration settings."""

    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: Optional[str] = Field(default=None, alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    redis_socket_timeout: int = 30
    redis_retry_on_timeout: bool = True
    redis_max_connections: int = 20

    # Outbound notifications are consumed by an external delivery worker
    notification_queue: str = "queue:notifications"


class DeviceApiConfig(BaseSettings):
    """Device-management API (iProxy) configuration settings."""

    device_api_url: str = Field(
        default="https://iproxy.online/api/cn/v1", alias="IPROXY_API_URL"
    )
    device_api_key: str = Field(default="", alias="IPROXY_API_KEY")
    device_api_timeout: int = 30
    device_api_retry_attempts: int = Field(default=3, alias="IPROXY_RETRY_ATTEMPTS")
    device_api_initial_error_delay: float = 1.0
    device_api_error_backoff_multiplier: float = 2.0
    device_api_max_backoff: float = 60.0
    device_api_failure_threshold: int = 3

    @field_validator("device_api_url")
    @classmethod
    def validate_device_api_url(cls, v: str) -> str:
        """Ensure device API URL is properly formatted."""
        return _validate_http_url(v, "device_api_url")


class PaymentsConfig(BaseSettings):
    """Payment provider (NOWPayments) configuration settings."""

    nowpayments_api_url: str = Field(
        default="https://api.nowpayments.io/v1", alias="NOWPAYMENTS_API_URL"
    )
    nowpayments_api_key: str = Field(default="", alias="NOWPAYMENTS_API_KEY")
    nowpayments_ipn_secret: str = Field(default="", alias="NOWPAYMENTS_IPN_SECRET")
    nowpayments_timeout: int = 30
    pay_currency: str = Field(default="usdttrc20", alias="PAY_CURRENCY")
    price_currency: str = Field(default="usd", alias="PRICE_CURRENCY")

    reject_on_bad_signature: bool = Field(default=False, alias="REJECT_ON_BAD_SIGNATURE")
    skip_webhook_ip_check: bool = Field(default=False, alias="SKIP_WEBHOOK_IP_CHECK")
    webhook_allowed_ips: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_WEBHOOK_IPS), alias="WEBHOOK_ALLOWED_IPS"
    )
    webhook_event_retention_days: int = Field(default=30, alias="WEBHOOK_EVENT_RETENTION_DAYS", gt=0)

    @field_validator("reject_on_bad_signature", "skip_webhook_ip_check", mode="before")
    @classmethod
    def validate_policy_flags(cls, v) -> bool:
        """Convert string boolean values to actual boolean."""
        return str_to_bool(v)

    @field_validator("webhook_allowed_ips", mode="before")
    @classmethod
    def validate_webhook_allowed_ips(cls, v) -> List[str]:
        """Accept a comma separated list from the environment."""
        if isinstance(v, str):
            return [ip.strip() for ip in v.split(",") if ip.strip()]
        return v

    @field_validator("nowpayments_api_url")
    @classmethod
    def validate_nowpayments_api_url(cls, v: str) -> str:
        return _validate_http_url(v, "nowpayments_api_url")


class QuotaConfig(BaseSettings):
    """Quota reservation and order lifecycle settings."""

    reservation_ttl_minutes: int = Field(default=15, alias="RESERVATION_TTL_MINUTES", gt=0)
    deduct_ttl_minutes: int = Field(default=1, alias="DEDUCT_TTL_MINUTES", gt=0)
    reservation_sweep_interval: int = Field(default=60, alias="RESERVATION_SWEEP_INTERVAL")
    reservation_sweep_batch_size: int = 100
    order_expiry_interval: int = Field(default=300, alias="ORDER_EXPIRY_INTERVAL")
    provisioning_claim_timeout: int = Field(default=600, alias="PROVISIONING_CLAIM_TIMEOUT")
    default_plan_duration_days: int = Field(default=30, alias="DEFAULT_PLAN_DURATION_DAYS")
    trial_duration_days: int = Field(default=7, alias="TRIAL_DURATION_DAYS")
    maintenance_enabled: bool = Field(default=True, alias="MAINTENANCE_ENABLED")

    @field_validator("maintenance_enabled", mode="before")
    @classmethod
    def validate_maintenance_enabled(cls, v) -> bool:
        return str_to_bool(v)


class MonitoringConfig(BaseSettings):
    """Monitoring configuration settings."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_json", mode="before")
    @classmethod
    def validate_log_json(cls, v) -> bool:
        return str_to_bool(v)


class SecurityConfig(BaseSettings):
    """Security configuration settings."""

    admin_api_key: str = Field(default="", alias="ADMIN_API_KEY")
    api_key_header: str = "X-API-Key"
    user_id_header: str = "X-User-ID"
    proxy_encryption_key: str = Field(default="", alias="PROXY_ENCRYPTION_KEY")

    @field_validator("proxy_encryption_key")
    @classmethod
    def validate_proxy_encryption_key(cls, v: str) -> str:
        """AES-256 keys are configured as 64 hex characters."""
        if v and not re.fullmatch(r"[0-9a-fA-F]{64}", v):
            raise ValueError("proxy_encryption_key must be 64 hex characters (32 bytes)")
        return v


class ApplicationConfig(
    ServerConfig,
    RedisConfig,
    DeviceApiConfig,
    PaymentsConfig,
    QuotaConfig,
    MonitoringConfig,
    SecurityConfig,
    BaseSettings
):
    """Main application configuration that combines all configuration domains."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )
