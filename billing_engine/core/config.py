"""
Configuration management module for the Representative Billing Engine.
Loads and validates environment variables with type safety using Pydantic.
"""

import re
from decimal import Decimal
from pathlib import Path
from typing import Optional, Dict, Any
from functools import lru_cache

from pydantic import Field, field_validator, ValidationInfo
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv


# Load environment variables from .env file
env_path = Path(__file__).parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


_SETTINGS_CONFIG = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class DatabaseConfig(BaseSettings):
    """Billing database connection configuration"""

    billing_db_host: str = Field(default="localhost")
    billing_db_port: int = Field(default=5432)
    billing_db_name: str = Field(default="billing")
    billing_db_user: str = Field(default="billing_app")
    billing_db_password: str = Field(default="")
    billing_db_ssl_mode: str = Field(default="prefer")

    # Connection pooling
    billing_db_pool_min: int = Field(default=2, ge=1)
    billing_db_pool_max: int = Field(default=10, ge=1)

    model_config = _SETTINGS_CONFIG

    @property
    def billing_db_url(self) -> str:
        """Generate PostgreSQL connection URL for the billing database"""
        return (
            f"postgresql://{self.billing_db_user}:{self.billing_db_password}"
            f"@{self.billing_db_host}:{self.billing_db_port}/{self.billing_db_name}"
            f"?sslmode={self.billing_db_ssl_mode}"
        )

    @field_validator("billing_db_pool_max")
    @classmethod
    def validate_pool_sizes(cls, v, info: ValidationInfo):
        """Ensure pool max is greater than pool min"""
        pool_min = info.data.get("billing_db_pool_min")
        if pool_min is not None and v <= pool_min:
            raise ValueError("billing_db_pool_max must be greater than billing_db_pool_min")
        return v


class ServiceConfig(BaseSettings):
    """HTTP service configuration"""

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8010)

    model_config = _SETTINGS_CONFIG


class AppConfig(BaseSettings):
    """Application-wide configuration"""

    # Environment
    app_env: str = Field(default="development")
    app_debug: bool = Field(default=False)
    app_log_level: str = Field(default="INFO")
    app_json_logs: bool = Field(default=True)
    cors_origins: str = Field(default="http://localhost:3000")

    model_config = _SETTINGS_CONFIG

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @field_validator("app_log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is valid"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("app_env")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment is valid"""
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Invalid environment. Must be one of: {valid_envs}")
        return v.lower()

    @field_validator("app_debug")
    @classmethod
    def validate_debug_mode(cls, v, info: ValidationInfo):
        """Ensure debug is False in production"""
        if info.data.get("app_env") == "production" and v:
            raise ValueError("Debug mode must be disabled in production")
        return v


class BillingConfig(BaseSettings):
    """Invoice and ledger behaviour"""

    invoice_number_prefix: str = Field(default="INV")
    invoice_due_days: int = Field(default=30, ge=0)
    currency_code: str = Field(default="IRT")
    # Smallest billable unit of the currency; line totals are rounded to it
    currency_minor_unit: Decimal = Field(default=Decimal("1"), gt=0)
    auto_register_representatives: bool = Field(default=False)
    storage_backend: str = Field(default="memory")

    model_config = _SETTINGS_CONFIG

    @field_validator("invoice_number_prefix")
    @classmethod
    def validate_prefix(cls, v):
        """Invoice numbers end up in URLs and file names"""
        if not re.fullmatch(r"[A-Za-z0-9]+", v):
            raise ValueError("invoice_number_prefix may only contain letters and digits")
        return v.upper()

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v):
        """Validate storage backend is known"""
        valid_backends = ["memory", "postgres"]
        if v.lower() not in valid_backends:
            raise ValueError(f"Invalid storage backend. Must be one of: {valid_backends}")
        return v.lower()


class Settings:
    """Main settings class that combines all configuration sections"""

    def __init__(self, **kwargs):
        self.database = kwargs.get("database") or DatabaseConfig()
        self.service = kwargs.get("service") or ServiceConfig()
        self.app = kwargs.get("app") or AppConfig()
        self.billing = kwargs.get("billing") or BillingConfig()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.app.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment"""
        return self.app.app_env == "development"

    def to_dict(self, include_sensitive: bool = False) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        config = {
            "app": {
                "environment": self.app.app_env,
                "debug": self.app.app_debug,
                "log_level": self.app.app_log_level,
                "json_logs": self.app.app_json_logs,
            },
            "database": {
                "host": self.database.billing_db_host,
                "port": self.database.billing_db_port,
                "name": self.database.billing_db_name,
                "user": self.database.billing_db_user,
                "pool_min": self.database.billing_db_pool_min,
                "pool_max": self.database.billing_db_pool_max,
            },
            "service": {
                "host": self.service.api_host,
                "port": self.service.api_port,
            },
            "billing": {
                "invoice_number_prefix": self.billing.invoice_number_prefix,
                "invoice_due_days": self.billing.invoice_due_days,
                "currency_code": self.billing.currency_code,
                "currency_minor_unit": str(self.billing.currency_minor_unit),
                "auto_register_representatives": self.billing.auto_register_representatives,
                "storage_backend": self.billing.storage_backend,
            },
        }

        if include_sensitive:
            # Only include sensitive data if explicitly requested
            config["database"]["password"] = self.database.billing_db_password

        return config


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The application settings instance

    Example:
        >>> from billing_engine.core.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.billing.invoice_number_prefix)
        'INV'
    """
    return Settings()


if __name__ == "__main__":
    # Test configuration loading
    import json
    import sys

    try:
        config = get_settings()
        print("Configuration loaded successfully")
        print(json.dumps(config.to_dict(), indent=2))
    except Exception as e:
        print(f"Configuration error: {e}")
        sys.exit(1)
