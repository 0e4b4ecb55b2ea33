"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Optional, List

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncConfiguration


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Provider OAuth configuration
    calendly_client_id: str = Field(default="", description="Calendly OAuth Client ID")
    calendly_client_secret: str = Field(default="", description="Calendly OAuth Client Secret")
    calendly_redirect_uri: str = Field(default="", description="OAuth redirect URI registered with Calendly")
    calendly_api_base_url: str = Field(
        default="https://api.calendly.com",
        description="Calendly REST API base URL"
    )
    calendly_auth_base_url: str = Field(
        default="https://auth.calendly.com",
        description="Calendly OAuth base URL"
    )

    # Webhook configuration
    webhook_callback_url: Optional[str] = Field(
        default=None,
        description="Public URL the provider posts webhook deliveries to"
    )
    webhook_signing_key: Optional[str] = Field(
        default=None,
        description="Shared key used to sign webhook deliveries"
    )
    webhook_tolerance_seconds: int = Field(
        default=300,
        ge=0,
        description="Maximum age of a signed webhook delivery"
    )

    # Application configuration
    app_name: str = Field(default="eventsync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    default_timezone: str = Field(default="UTC", description="Timezone for metrics when none is given")

    # Storage configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".eventsync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        validate_default=True,
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Sync configuration
    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Reconciliation settings"
    )

    # Performance configuration
    max_concurrent_requests: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum concurrent HTTP requests"
    )
    request_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="HTTP request timeout"
    )
    provider_call_timeout_seconds: int = Field(
        default=90,
        ge=1,
        description="Upper bound for one provider call including retries"
    )
    retry_attempts: int = Field(default=3, ge=1, description="Attempts for retryable provider errors")
    retry_backoff_seconds: float = Field(default=1.0, ge=0, description="Initial retry backoff")
    rate_limit_requests_per_minute: int = Field(
        default=300,
        ge=1,
        description="Rate limit for API requests"
    )

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url')
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/eventsync.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('default_timezone')
    def validate_timezone(cls, v):
        import pytz
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @validator('calendly_api_base_url', 'calendly_auth_base_url', 'webhook_callback_url')
    def strip_trailing_slash(cls, v):
        return v.rstrip('/') if v else v

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []

        if not self.calendly_client_id:
            missing.append('CALENDLY_CLIENT_ID')
        if not self.calendly_client_secret:
            missing.append('CALENDLY_CLIENT_SECRET')
        if not self.calendly_redirect_uri:
            missing.append('CALENDLY_REDIRECT_URI')

        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# eventsync configuration
# Copy this file to .env and fill in your actual credentials

# Calendly OAuth application
CALENDLY_CLIENT_ID=your_client_id_here
CALENDLY_CLIENT_SECRET=your_client_secret_here
CALENDLY_REDIRECT_URI=https://dashboard.example.com/oauth/calendly/callback

# Webhooks (leave the callback unset to run in polling mode)
# WEBHOOK_CALLBACK_URL=https://sync.example.com/webhooks/calendly
# WEBHOOK_SIGNING_KEY=change_me
WEBHOOK_TOLERANCE_SECONDS=300

# Application configuration
DEBUG=false
LOG_LEVEL=INFO
DEFAULT_TIMEZONE=UTC

# Reconciliation
SYNC_CONFIG__LOOKBACK_DAYS=2
SYNC_CONFIG__DEBUG_LOOKBACK_DAYS=7
SYNC_CONFIG__LOOKAHEAD_DAYS=60
SYNC_CONFIG__BACKFILL_DAYS=90
SYNC_CONFIG__POLLING_INTERVAL_MINUTES=15
SYNC_CONFIG__BACKSTOP_INTERVAL_MINUTES=60
SYNC_CONFIG__SYNC_LEASE_SECONDS=300

# Performance configuration
MAX_CONCURRENT_REQUESTS=10
REQUEST_TIMEOUT_SECONDS=30
PROVIDER_CALL_TIMEOUT_SECONDS=90
RETRY_ATTEMPTS=3
RATE_LIMIT_REQUESTS_PER_MINUTE=300

# Storage configuration (optional)
# DATA_DIR=~/.eventsync
# DATABASE_URL=sqlite:///~/.eventsync/eventsync.db
'''

    with open(path, 'w') as f:
        f.write(example_content)
