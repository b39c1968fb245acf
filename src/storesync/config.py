"""Configuration for remote sync: credentials, queue policy and engine settings.

Settings are validated with pydantic and persisted as YAML in the data
directory (``~/.storesync`` unless ``STORESYNC_DATA_DIR`` is set). Credentials
may also come from the environment so tokens need not be written to disk.
"""

import os
import logging
from enum import Enum
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .sync.models import ConflictStrategy, EntityKind, SyncDirection
from .utils.datetime import now_utc


logger = logging.getLogger(__name__)


ENV_ACCESS_TOKEN = "STORESYNC_ACCESS_TOKEN"
ENV_MERCHANT_ID = "STORESYNC_MERCHANT_ID"
ENV_LOCATION_ID = "STORESYNC_LOCATION_ID"
ENV_DATA_DIR = "STORESYNC_DATA_DIR"
ENV_WEBHOOK_SIGNATURE_KEY = "STORESYNC_WEBHOOK_SIGNATURE_KEY"

DEFAULT_DATA_DIR = "~/.storesync"

# Interval presets offered by the scheduler, in seconds
SYNC_INTERVAL_PRESETS = {
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14400,
    "daily": 86400,
}


def get_data_dir() -> Path:
    """Get the storesync data directory."""
    return Path(os.path.expanduser(os.environ.get(ENV_DATA_DIR) or DEFAULT_DATA_DIR))


class RemoteEnvironment(Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class RemoteCredentials(BaseModel):
    """Credentials for the remote commerce account."""

    access_token: Optional[str] = None
    merchant_id: Optional[str] = None
    location_id: Optional[str] = None
    webhook_signature_key: Optional[str] = None
    environment: RemoteEnvironment = RemoteEnvironment.SANDBOX

    @field_validator('access_token', 'merchant_id', 'location_id', 'webhook_signature_key')
    @classmethod
    def blank_is_missing(cls, v):
        if v is not None and not v.strip():
            return None
        return v


class QueuePolicy(BaseModel):
    """Retry policy of the offline operation queue."""

    base_delay: float = 5.0
    max_delay: float = 900.0
    max_attempts: int = 5

    @field_validator('base_delay', 'max_delay')
    @classmethod
    def validate_delay(cls, v):
        if v <= 0:
            raise ValueError('Delays must be positive')
        return v

    @field_validator('max_attempts')
    @classmethod
    def validate_max_attempts(cls, v):
        if v < 1:
            raise ValueError('max_attempts must be at least 1')
        return v


class SyncSettings(BaseModel):
    """Complete sync configuration."""

    credentials: RemoteCredentials = Field(default_factory=RemoteCredentials)
    queue: QueuePolicy = Field(default_factory=QueuePolicy)

    enabled: bool = True
    sync_interval: int = 3600  # seconds
    default_strategy: ConflictStrategy = ConflictStrategy.MOST_RECENT_WINS
    default_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    entity_kinds: List[EntityKind] = Field(
        default_factory=lambda: [EntityKind.CUSTOMER, EntityKind.INVENTORY_ITEM]
    )

    # Engine tuning
    worker_count: int = 4
    request_timeout: float = 30.0
    lock_timeout: float = 600.0
    requests_per_minute: int = 120

    # Storage
    data_dir: str = DEFAULT_DATA_DIR
    local_store_factory: Optional[str] = None  # "package.module:callable"

    @field_validator('sync_interval')
    @classmethod
    def validate_sync_interval(cls, v):
        if v < 60:
            raise ValueError('Sync interval must be at least 60 seconds')
        return v

    @field_validator('worker_count')
    @classmethod
    def validate_worker_count(cls, v):
        if v < 1 or v > 16:
            raise ValueError('worker_count must be between 1 and 16')
        return v

    @field_validator('requests_per_minute')
    @classmethod
    def validate_rate_limit(cls, v):
        if v < 1 or v > 1000:
            raise ValueError('Rate limit must be between 1 and 1000 requests per minute')
        return v

    @property
    def data_path(self) -> Path:
        return Path(os.path.expanduser(self.data_dir))

    @property
    def database_path(self) -> Path:
        return self.data_path / "sync.db"

    @property
    def local_records_path(self) -> Path:
        return self.data_path / "local_records.json"

    def missing_fields(self) -> List[str]:
        """Names of required settings that are absent."""
        missing = []
        for name in ('access_token', 'merchant_id', 'location_id'):
            if not getattr(self.credentials, name):
                missing.append(name)
        return missing

    def is_configured(self) -> bool:
        return self.enabled and not self.missing_fields()

    def apply_env_overrides(self, environ=None) -> "SyncSettings":
        """Overlay credentials and data dir from the environment."""
        environ = os.environ if environ is None else environ
        if environ.get(ENV_ACCESS_TOKEN):
            self.credentials.access_token = environ[ENV_ACCESS_TOKEN]
        if environ.get(ENV_MERCHANT_ID):
            self.credentials.merchant_id = environ[ENV_MERCHANT_ID]
        if environ.get(ENV_LOCATION_ID):
            self.credentials.location_id = environ[ENV_LOCATION_ID]
        if environ.get(ENV_WEBHOOK_SIGNATURE_KEY):
            self.credentials.webhook_signature_key = environ[ENV_WEBHOOK_SIGNATURE_KEY]
        if environ.get(ENV_DATA_DIR):
            self.data_dir = environ[ENV_DATA_DIR]
        return self


class SettingsManager:
    """Manages sync settings with file-based persistence."""

    CONFIG_FILE = "storesync.yaml"

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize config manager.

        Args:
            config_dir: Optional config directory path
        """
        self.config_dir = Path(config_dir) if config_dir else get_data_dir()
        self.config_file = self.config_dir / self.CONFIG_FILE
        self.settings = SyncSettings(data_dir=str(self.config_dir))
        self.logger = logging.getLogger(__name__)

        self.load()

    def load(self) -> SyncSettings:
        """Load configuration from file, falling back to defaults."""
        if not self.config_file.exists():
            self.logger.debug("No storesync config file found, using defaults")
            return self.settings

        try:
            with open(self.config_file, 'r') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            self.logger.error(f"Failed to read storesync config: {e}")
            return self.settings

        if not data:
            return self.settings

        data.pop('_metadata', None)
        data.setdefault('data_dir', str(self.config_dir))
        try:
            self.settings = SyncSettings(**data)
        except ValidationError as e:
            self.logger.error(f"Invalid storesync config in {self.config_file}: {e}")
            raise

        self.logger.debug(f"Loaded storesync config from {self.config_file}")
        return self.settings

    def save(self):
        """Save configuration to file."""
        data = self.settings.model_dump(mode='json')
        data['_metadata'] = {
            'version': '1.0',
            'updated_at': now_utc().isoformat(),
        }

        self.config_file.parent.mkdir(parents=True, exist_ok=True)

        # Write with atomic operation
        temp_file = self.config_file.with_suffix('.tmp')
        with open(temp_file, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, indent=2, sort_keys=True)
        temp_file.replace(self.config_file)

        self.logger.debug(f"Saved storesync config to {self.config_file}")


def load_settings(config_dir: Optional[Path] = None, environ=None) -> SyncSettings:
    """Load settings from YAML and apply environment overrides."""
    return SettingsManager(config_dir).settings.apply_env_overrides(environ)
