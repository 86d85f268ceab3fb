"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class BankingConfig(BaseSettings):
    """Online banking ledger configuration"""

    # Database configuration
    database_url: str = "sqlite:///online_banking.db"  # memory://, sqlite:///path, postgresql://...

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 24
    jwt_algorithm: str = "HS256"
    auth_enabled: bool = True
    transaction_pin_length: int = 4

    # Manual transfer-approval gate (shared secret, not a real AML control)
    aml_code: str = ""
    aml_code_length: int = 6
    aml_code_expiry_hours: int = 24

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "USD"
    minimum_deposit_amount: str = "3000.00"

    # Support chat
    chat_max_attachment_bytes: int = 10 * 1024 * 1024
    chat_history_limit: int = 100

    # Notification delivery
    notification_webhook_url: str = ""  # Empty = disabled
    notification_timeout: float = 5.0

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "BANKING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BankingConfig()


def get_config() -> BankingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankingConfig:
    """Reload configuration from environment"""
    global config
    config = BankingConfig()
    return config
