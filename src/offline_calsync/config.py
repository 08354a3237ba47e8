"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Optional, List

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncConfiguration


DEFAULT_REDIRECT_URI = "http://localhost:34115/oauth2/callback"

DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR")
    )

    # Google OAuth client. Optional: the app runs offline without it.
    google_client_id: Optional[str] = Field(None, description="Google OAuth Client ID")
    google_client_secret: Optional[str] = Field(None, description="Google OAuth Client Secret")
    google_client_id_file: Optional[str] = Field(None, description="Path to file containing Google Client ID")
    google_client_secret_file: Optional[str] = Field(None, description="Path to file containing Google Client Secret")
    google_redirect_uri: str = Field(
        default=DEFAULT_REDIRECT_URI,
        description="OAuth redirect URI registered for the client"
    )
    google_scopes: List[str] = Field(
        default_factory=lambda: list(DEFAULT_SCOPES),
        description="Google API scopes"
    )
    google_calendar_id: str = Field(default="primary", description="Calendar kept in sync")

    # Application Configuration
    app_name: str = Field(default="offline-calsync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".offline-calsync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )
    credentials_dir: Optional[Path] = Field(
        default=None,
        description="Credentials directory (defaults to data_dir/credentials)"
    )

    # Sync Configuration
    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Synchronization settings"
    )

    request_timeout_seconds: int = Field(
        default=10,
        ge=1,
        le=300,
        description="HTTP request timeout"
    )

    @validator('data_dir', 'credentials_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url', always=True)
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/calsync.db"
        return v

    @validator('credentials_dir', always=True)
    def set_default_credentials_dir(cls, v, values):
        """Set default credentials directory if not provided."""
        if v is None and 'data_dir' in values:
            return values['data_dir'] / "credentials"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('google_client_id', 'google_client_secret')
    def strip_client_value(cls, v):
        """Treat blank client values as unset."""
        if v is None:
            return v
        v = v.strip()
        return v or None

    def __init__(self, **kwargs):
        """Initialize settings with file-based credential support."""
        if kwargs.get('google_client_id_file'):
            kwargs['google_client_id'] = self._read_credential_file(kwargs['google_client_id_file'])
        if kwargs.get('google_client_secret_file'):
            kwargs['google_client_secret'] = self._read_credential_file(kwargs['google_client_secret_file'])

        super().__init__(**kwargs)

    def _read_credential_file(self, file_path: str) -> str:
        """Read credential from file with proper error handling.

        Args:
            file_path: Path to credential file

        Returns:
            Credential value

        Raises:
            ValueError: If file cannot be read
        """
        try:
            with open(file_path, 'r') as f:
                credential = f.read().strip()
        except FileNotFoundError:
            raise ValueError(f"Credential file not found: {file_path}")
        except PermissionError:
            raise ValueError(f"Permission denied reading credential file: {file_path}")
        except OSError as e:
            raise ValueError(f"Error reading credential file {file_path}: {e}")
        if not credential:
            raise ValueError(f"Credential file {file_path} is empty")
        return credential

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only
        if self.credentials_dir:
            self.credentials_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only

    @property
    def google_token_path(self) -> Path:
        """Path to Google OAuth token file."""
        return self.credentials_dir / "google_token.json"

    @property
    def client_configured(self) -> bool:
        """Whether an OAuth client is fully configured."""
        return bool(self.google_client_id and self.google_client_secret and self.google_redirect_uri)

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []

        if not self.google_client_id:
            missing.append('GOOGLE_CLIENT_ID')
        if not self.google_client_secret:
            missing.append('GOOGLE_CLIENT_SECRET')
        if not self.google_redirect_uri:
            missing.append('GOOGLE_REDIRECT_URI')

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
    example_content = f'''# offline-calsync configuration
# Copy this file to .env and fill in your OAuth client

# Google OAuth client (Desktop or Web client with the redirect below)
GOOGLE_CLIENT_ID=your_google_client_id_here
GOOGLE_CLIENT_SECRET=your_google_client_secret_here
GOOGLE_REDIRECT_URI={DEFAULT_REDIRECT_URI}
GOOGLE_CALENDAR_ID=primary

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO
REQUEST_TIMEOUT_SECONDS=10

# Sync Configuration
SYNC_CONFIG__SYNC_INTERVAL_MINUTES=15
SYNC_CONFIG__PUSH_DEBOUNCE_SECONDS=2
SYNC_CONFIG__SYNC_TIMEOUT_SECONDS=120
SYNC_CONFIG__TOKEN_EXPIRY_MARGIN_SECONDS=60
SYNC_CONFIG__PAGE_SIZE=250
SYNC_CONFIG__RETRY_ATTEMPTS=3

# Storage Configuration (optional)
# DATA_DIR=~/.offline-calsync
# DATABASE_URL=sqlite:///~/.offline-calsync/calsync.db
'''

    with open(path, 'w') as f:
        f.write(example_content)
