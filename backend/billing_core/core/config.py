"""
Configuration management using Pydantic settings.
Supports environment variables, .env files, and YAML configuration.
"""

import os
import yaml
from typing import Any, Dict, Optional
from enum import Enum
from functools import lru_cache
import logging

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Environment(str, Enum):
    """Application environments."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseConfig(BaseSettings):
    """Database configuration."""
    model_config = SettingsConfigDict(env_prefix="DB_", extra="ignore")

    url: str = "sqlite+aiosqlite:///./billing.db"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    create_tables: bool = True

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class SecurityConfig(BaseSettings):
    """Security configuration."""
    model_config = SettingsConfigDict(env_prefix="SECURITY_", extra="ignore")

    secret_key: Optional[str] = None
    algorithm: str = "HS256"
    # Fernet key used to encrypt stored store receipts
    encryption_key: Optional[str] = None

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v):
        if v is not None and len(v) < 32:
            raise ValueError("Secret key must be at least 32 characters long")
        return v


class LoggingConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")

    level: LogLevel = LogLevel.INFO
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    json_format: bool = False
    file_path: Optional[str] = None
    max_file_size: int = 10485760  # 10MB
    backup_count: int = 5


class RazorpayConfig(BaseSettings):
    """Hosted checkout provider credentials."""
    model_config = SettingsConfigDict(env_prefix="RAZORPAY_", extra="ignore")

    key_id: Optional[str] = None
    key_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    base_url: str = "https://api.razorpay.com/v1"
    total_count: int = 360
    customer_notify: bool = True


class GooglePlayConfig(BaseSettings):
    """Android store credentials."""
    model_config = SettingsConfigDict(env_prefix="GOOGLE_PLAY_", extra="ignore")

    package_name: Optional[str] = None
    # Inline JSON key or a path to the key file
    service_account_json: Optional[str] = None
    pubsub_verification_token: Optional[str] = None
    use_legacy_api: bool = False
    token_uri: str = "https://oauth2.googleapis.com/token"
    api_base_url: str = "https://androidpublisher.googleapis.com/androidpublisher/v3"


class AppleAppStoreConfig(BaseSettings):
    """iOS store credentials."""
    model_config = SettingsConfigDict(env_prefix="APPLE_", extra="ignore")

    shared_secret: Optional[str] = None
    bundle_id: Optional[str] = None
    root_certificate_path: Optional[str] = None
    production_url: str = "https://buy.itunes.apple.com/verifyReceipt"
    sandbox_url: str = "https://sandbox.itunes.apple.com/verifyReceipt"


class PlanConfig(BaseModel):
    """A purchasable plan on the hosted checkout provider."""
    provider_plan_id: str
    amount_minor: int
    currency: str = "INR"
    name: Optional[str] = None
    product_family: str = "default"


class BillingConfig(BaseSettings):
    """Reconciliation pipeline tuning."""
    model_config = SettingsConfigDict(env_prefix="BILLING_", extra="ignore")

    webhook_response_budget_seconds: float = 0.8
    http_timeout_seconds: float = 10.0
    retry_attempts: int = 3
    retry_min_wait: float = 0.5
    retry_max_wait: float = 8.0
    follow_up_attempts: int = 5
    grace_period_days: int = 3
    sweep_interval_seconds: int = 3600
    orphan_retry_delay_seconds: float = 30.0
    orphan_max_attempts: int = 5
    plans: Dict[str, PlanConfig] = Field(default_factory=dict)


class Config(BaseSettings):
    """Main application configuration."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Core
    app_name: str = "Billing Core"
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    api_prefix: str = "/api/v1"

    # Components
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)

    # Providers
    razorpay: RazorpayConfig = Field(default_factory=RazorpayConfig)
    google_play: GooglePlayConfig = Field(default_factory=GooglePlayConfig)
    apple: AppleAppStoreConfig = Field(default_factory=AppleAppStoreConfig)

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v):
        if isinstance(v, str):
            return v.lower()
        return v

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    def is_testing(self) -> bool:
        """Check if running in testing environment."""
        return self.environment == Environment.TESTING


def _load_yaml(config_file: str) -> Dict[str, Any]:
    with open(config_file, "r") as f:
        data = yaml.safe_load(f)
    return data or {}


@lru_cache()
def get_config(config_file: Optional[str] = None) -> Config:
    """
    Get cached configuration instance.

    Args:
        config_file: Optional path to YAML configuration file

    Returns:
        Config instance
    """
    config_file = config_file or os.environ.get("BILLING_CONFIG_FILE")
    config_data: Dict[str, Any] = {}

    if config_file and os.path.exists(config_file):
        try:
            config_data = _load_yaml(config_file)
            logger.info(f"Loaded configuration from {config_file}")
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load YAML config from {config_file}: {e}")

    config = Config(**config_data)

    logger.info(f"Configuration loaded for {config.app_name} in {config.environment.value} environment")
    return config


def load_config(config_file: Optional[str] = None) -> Config:
    """
    Load configuration (clears cache first).

    Args:
        config_file: Optional path to YAML configuration file

    Returns:
        Config instance
    """
    get_config.cache_clear()
    return get_config(config_file)
