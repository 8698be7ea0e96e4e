"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Dict, Optional


class EngineConfig(BaseSettings):
    """Repayment engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///repayment_engine.db"

    # Ledger configuration
    default_currency: str = "USD"
    rounding_tolerance: str = "0.01"  # Allowed drift for ledger invariants

    # Payment application
    payment_cooldown_seconds: int = 60  # Duplicate-submission window per installment
    excess_payment_policy: str = "return"  # return or cascade

    # Classification and provisioning
    arrears_reference: str = "oldest_unpaid"  # oldest_unpaid or maximum
    provisioning_rates: Dict[str, str] = {
        "normal": "0.01",
        "watch": "0.05",
        "substandard": "0.25",
        "doubtful": "0.50",
        "loss": "1.00",
    }

    # Batch jobs
    batch_size: int = 100  # Loans per progress log line

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Feature flags
    enable_audit_logging: bool = True
    enable_events: bool = True

    class Config:
        env_prefix = "REPAYMENT_"
        env_file = ".env"
        case_sensitive = False


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
