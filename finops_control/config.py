"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class FinopsConfig(BaseSettings):
    """Control plane configuration"""

    model_config = SettingsConfigDict(
        env_prefix="FINOPS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///finops.db"  # or memory:// for tests
    default_tenant: str = "default"

    # Maker-checker policy
    maker_checker_enabled: bool = True  # Initial value of the per-tenant global switch
    # Permission codes missing from the matrix: "allow" executes directly
    # (fail open), "require_approval" defers to the inbox (fail closed).
    missing_permission_policy: Literal["allow", "require_approval"] = "allow"

    # Audit timeline configuration
    timeline_timezone: str = "UTC"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout


# Global configuration instance
config = FinopsConfig()


def get_config() -> FinopsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FinopsConfig:
    """Reload configuration from environment"""
    global config
    config = FinopsConfig()
    return config
