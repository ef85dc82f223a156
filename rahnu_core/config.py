"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class RahnuConfig(BaseSettings):
    """Ar-Rahnu core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="RAHNU_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db or postgresql://...
    database_pool_size: int = 10
    storage_timeout_seconds: float = 5.0  # Budget for a single storage call

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency: str = "MYR"
    min_margin_percent: str = "0"     # Exclusive lower bound
    max_margin_percent: str = "100"   # Inclusive upper bound
    default_margin_percent: str = "75"
    ujrah_percentage_monthly: str = "0.75"
    default_loan_period_months: int = 6
    savings_update_attempts: int = 5  # Balance compare-and-set attempts per trade

    # Audit configuration
    audit_retry_attempts: int = 3
    audit_retry_delay_seconds: float = 0.05


# Global configuration instance
config = RahnuConfig()


def get_config() -> RahnuConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> RahnuConfig:
    """Reload configuration from environment"""
    global config
    config = RahnuConfig()
    return config
