"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LoanServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOAN_SERVICING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Database configuration
    database_url: str = "sqlite:///loan_servicing.db"  # memory:// for in-memory

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Repayment rules
    strict_balance_validation: bool = False  # Reject payments above loan balance
    assess_penalties_on_payment: bool = True  # Recompute penalties at payment date

    # Concurrency
    lock_timeout_seconds: float = 10.0

    # Receipts
    receipt_prefix: str = "RPT"
    receipt_number_width: int = 3

    # Audit
    enable_audit_logging: bool = True
    default_actor: str = "system"


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config
