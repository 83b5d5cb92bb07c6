"""Settings for the sync engine, read from the environment and ``.env``."""

import os
from pathlib import Path
from typing import Optional, List

from pydantic import Field, root_validator, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncConfiguration

CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


def read_secret_file(file_path: str) -> str:
    """Return the stripped contents of a file holding a single secret.

    Raises:
        ValueError: If the file is missing, unreadable or empty
    """
    path = Path(file_path).expanduser()
    try:
        secret = path.read_text(encoding='utf-8').strip()
    except FileNotFoundError:
        raise ValueError(f"Secret file does not exist: {path}")
    except PermissionError:
        raise ValueError(f"Secret file is not readable: {path}")
    if not secret:
        raise ValueError(f"Secret file is empty: {path}")
    return secret


class Settings(BaseSettings):
    """Runtime settings; every field can be overridden by an env variable."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR")
    )

    # OAuth client (Desktop app). Can also be stored with `config set-client`.
    google_client_id: Optional[str] = Field(None, description="OAuth client id")
    google_client_secret: Optional[str] = Field(None, description="OAuth client secret")
    google_client_id_file: Optional[str] = Field(None, description="File holding the OAuth client id")
    google_client_secret_file: Optional[str] = Field(None, description="File holding the OAuth client secret")
    google_scopes: List[str] = Field(default=[CALENDAR_SCOPE], description="OAuth scopes requested on connect")
    google_calendar_id: Optional[str] = Field(None, description="Calendar used when none has been selected")

    app_name: str = Field(default="shiftcal-sync")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".shiftcal-sync",
        description="Where the database and credentials live"
    )
    database_url: str = Field(default="", description="SQLAlchemy URL; empty means SQLite under data_dir")
    credentials_dir: Optional[Path] = Field(default=None, description="Defaults to data_dir/credentials")

    oauth_callback_host: str = Field(default="127.0.0.1")
    oauth_callback_timeout_seconds: int = Field(
        default=180,
        ge=10,
        le=3600,
        description="How long to wait for the authorization redirect"
    )
    open_browser: bool = Field(default=True, description="Open the authorization URL in a browser")
    request_timeout_seconds: int = Field(default=30, ge=5, le=300)

    sync_config: SyncConfiguration = Field(default_factory=SyncConfiguration)

    @root_validator(pre=True)
    def load_secret_files(cls, values):
        """``*_file`` variants win over the plain values."""
        for name in ('google_client_id', 'google_client_secret'):
            file_path = values.get(f'{name}_file')
            if file_path:
                values[name] = read_secret_file(file_path)
        return values

    @validator('data_dir', 'credentials_dir', pre=True)
    def expand_path(cls, v):
        if v is None:
            return v
        return Path(v).expanduser().absolute()

    @validator('log_level')
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @validator('google_client_id', 'google_client_secret', 'google_calendar_id')
    def blank_to_none(cls, v):
        if v is None:
            return v
        return v.strip() or None

    def ensure_directories(self):
        """Create the data and credentials directories, readable by the owner only."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.credentials_path.mkdir(parents=True, exist_ok=True, mode=0o700)

    @property
    def database_uri(self) -> str:
        return self.database_url or f"sqlite:///{self.data_dir}/shiftcal.db"

    @property
    def credentials_path(self) -> Path:
        return self.credentials_dir or self.data_dir / "credentials"

    @property
    def token_store_path(self) -> Path:
        """File holding the refresh token."""
        return self.credentials_path / "token-store.json"


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Build settings from the environment and ``config_file`` (or ``.env``).

    The data directories are created as a side effect.
    """
    settings = Settings(_env_file=config_file) if config_file else Settings()
    settings.ensure_directories()
    return settings


EXAMPLE_CONFIG = '''# shiftcal-sync settings
# Every value can also be given as an environment variable.

# OAuth client of type "Desktop app" from the Google Cloud console
GOOGLE_CLIENT_ID=
GOOGLE_CLIENT_SECRET=
# or read them from files
# GOOGLE_CLIENT_ID_FILE=/run/secrets/google_client_id
# GOOGLE_CLIENT_SECRET_FILE=/run/secrets/google_client_secret

# Calendar used until one is picked with `shiftcal-sync calendars select`
# GOOGLE_CALENDAR_ID=primary

DEBUG=false
LOG_LEVEL=INFO

OAUTH_CALLBACK_TIMEOUT_SECONDS=180
OPEN_BROWSER=true

SYNC_CONFIG__SYNC_PAST_YEARS=5
SYNC_CONFIG__SYNC_FUTURE_MONTHS=12
SYNC_CONFIG__HOLIDAY_PAST_MONTHS=3
SYNC_CONFIG__HOLIDAY_FUTURE_MONTHS=12
SYNC_CONFIG__DEFAULT_TIME_ZONE=Asia/Seoul
SYNC_CONFIG__SYNC_INTERVAL_MINUTES=5
SYNC_CONFIG__OUTBOX_MAX_ATTEMPTS=8

# DATA_DIR=~/.shiftcal-sync
# DATABASE_URL=sqlite:////home/me/.shiftcal-sync/shiftcal.db
'''


def create_example_config(path: Path) -> None:
    """Write a commented ``.env`` template to ``path``."""
    Path(path).write_text(EXAMPLE_CONFIG, encoding='utf-8')
