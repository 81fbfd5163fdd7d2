"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings


class LendingConfig(BaseSettings):
    """Green Finance lending configuration"""

    # Persistence configuration
    storage_backend: str = "sqlite"  # memory, sqlite or supabase
    sqlite_path: str = "green_finance.db"
    supabase_url: str = ""
    supabase_key: str = ""

    # Document storage configuration
    blob_backend: str = "local"  # memory, local or supabase
    blob_directory: str = "uploads"
    blob_base_url: str = "/files"
    loan_documents_bucket: str = "loans"
    profile_pictures_bucket: str = "users"
    max_document_bytes: int = 5 * 1024 * 1024  # 5MB

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_title: str = "Green Finance Lending API"

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 24
    jwt_algorithm: str = "HS256"
    password_min_length: int = 6
    confirmation_token_hours: int = 48
    reset_token_hours: int = 1

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    interest_rate: str = "0.3999"  # Fixed return rate applied on approval

    # Read queries are refreshed by clients on this interval
    cache_ttl_seconds: int = 300

    # Feature flags
    enable_audit_logging: bool = True

    @property
    def interest_rate_decimal(self) -> Decimal:
        """Interest rate as a Decimal"""
        return Decimal(self.interest_rate)

    class Config:
        env_prefix = "GREEN_FINANCE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
