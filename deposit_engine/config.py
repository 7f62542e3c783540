"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_rate_table() -> Dict[int, Decimal]:
    # Insertion order matters: the first tier is the fallback rate
    return {
        90: Decimal("0.052"),
        180: Decimal("0.055"),
        365: Decimal("0.065"),
    }


class EngineConfig(BaseSettings):
    """Deposit engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="DEPOSIT_ENGINE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///deposit_engine.db"  # or memory://

    # Quarterly interest
    allow_join_quarter: bool = False  # credit accounts opened after quarter start

    # Fixed-deposit defaults used when a product's attributes are missing or broken
    fd_default_rate_table: Dict[int, Decimal] = Field(default_factory=_default_rate_table)
    fd_default_tenor_days: int = 180
    fd_premature_threshold_months: int = 3
    fd_premature_annual_rate: Decimal = Decimal("0.03")

    # Optimistic concurrency
    balance_update_retries: int = 3

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator("fd_premature_annual_rate", mode="before")
    @classmethod
    def _reject_float_rate(cls, value):
        if isinstance(value, float):
            return str(value)
        return value

    @field_validator("fd_default_rate_table")
    @classmethod
    def _check_rate_table(cls, value: Dict[int, Decimal]) -> Dict[int, Decimal]:
        if not value:
            raise ValueError("fd_default_rate_table must have at least one tier")
        for tenor, rate in value.items():
            if tenor <= 0 or rate <= 0:
                raise ValueError(f"Invalid default rate tier {tenor}: {rate}")
        return value


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
