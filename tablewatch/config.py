"""
config.py - Configuration for the change detector and the watch service
"""
import os
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Iterable, Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class ChangeDetectorConfig:
    """Per-table configuration of a ChangeDetector, immutable once built"""

    # Bookkeeping fields
    meta_field_name: str = "Meta"
    last_modified_field_name: str = "Last Modified"
    last_processed_field_name: Optional[str] = None  # None disables the feature

    # Fields never written into the snapshot nor used for change detection
    sensitive_fields: FrozenSet[str] = frozenset()

    # Write-back
    auto_update_enabled: bool = True
    write_delay: float = 0.0  # seconds to pause after each update batch
    update_batch_size: int = 10  # the remote store accepts 10 records per update

    # Polling
    overlap: float = 5.0  # seconds subtracted from the watermark to absorb clock skew
    io_timeout: Optional[float] = None  # bound on each select/update call
    isolate_record_errors: bool = True

    def __post_init__(self):
        if not isinstance(self.sensitive_fields, frozenset):
            object.__setattr__(self, "sensitive_fields", frozenset(self.sensitive_fields or ()))
        if self.last_processed_field_name == "":
            object.__setattr__(self, "last_processed_field_name", None)

    def from_env(self) -> 'ChangeDetectorConfig':
        """Load configuration from environment variables, keeping current values as defaults"""
        sensitive: Iterable[str] = self.sensitive_fields
        if os.getenv('SENSITIVE_FIELDS') is not None:
            sensitive = [f.strip() for f in os.getenv('SENSITIVE_FIELDS', '').split(',') if f.strip()]

        return replace(
            self,
            meta_field_name=os.getenv('META_FIELD_NAME', self.meta_field_name),
            last_modified_field_name=os.getenv('LAST_MODIFIED_FIELD_NAME', self.last_modified_field_name),
            last_processed_field_name=os.getenv('LAST_PROCESSED_FIELD_NAME', self.last_processed_field_name),
            sensitive_fields=frozenset(sensitive),
            auto_update_enabled=_env_bool('AUTO_UPDATE_ENABLED', self.auto_update_enabled),
            write_delay=_env_float('WRITE_DELAY', self.write_delay),
            io_timeout=_env_float('IO_TIMEOUT', self.io_timeout),
        )

    def validate(self) -> None:
        """Validate configuration settings"""
        errors = []

        if not self.meta_field_name:
            errors.append("meta_field_name must not be empty")

        if not self.last_modified_field_name:
            errors.append("last_modified_field_name must not be empty")

        if self.meta_field_name and self.meta_field_name == self.last_modified_field_name:
            errors.append("meta_field_name and last_modified_field_name must differ")

        if self.write_delay < 0:
            errors.append("write_delay must not be negative")

        if self.overlap < 0:
            errors.append("overlap must not be negative")

        if self.update_batch_size <= 0:
            errors.append("update_batch_size must be positive")

        if self.io_timeout is not None and self.io_timeout <= 0:
            errors.append("io_timeout must be positive")

        if errors:
            raise ValueError(f"Configuration validation errors: {'; '.join(errors)}")


@dataclass
class WatchServiceConfig:
    """Configuration for the watch service process"""

    # Database configuration
    backend_uri: str = ":memory:"
    table_name: str = "Requests"
    id_field: str = "id"

    # Worker configuration
    poll_interval: float = 5.0
    status_field: str = "Status"
    label_field: str = "Request ID"

    # API configuration
    host: str = "0.0.0.0"
    port: int = 8000

    detector: ChangeDetectorConfig = field(default_factory=ChangeDetectorConfig)

    def from_env(self) -> 'WatchServiceConfig':
        """Load configuration from environment variables"""
        config = WatchServiceConfig()

        # Database settings
        config.backend_uri = os.getenv('BACKEND_URI', config.backend_uri)
        config.table_name = os.getenv('WATCH_TABLE', config.table_name)
        config.id_field = os.getenv('ID_FIELD', config.id_field)

        # Worker settings
        config.poll_interval = float(os.getenv('POLL_INTERVAL', str(config.poll_interval)))
        config.status_field = os.getenv('STATUS_FIELD', config.status_field)
        config.label_field = os.getenv('LABEL_FIELD', config.label_field)

        # API settings
        config.host = os.getenv('API_HOST', config.host)
        config.port = int(os.getenv('API_PORT', str(config.port)))

        config.detector = ChangeDetectorConfig().from_env()

        return config

    def validate(self) -> None:
        """Validate configuration settings"""
        errors = []

        if not self.table_name:
            errors.append("table_name must not be empty")

        if self.poll_interval <= 0:
            errors.append("poll_interval must be positive")

        if not 0 < self.port < 65536:
            errors.append("port must be between 1 and 65535")

        if errors:
            raise ValueError(f"Configuration validation errors: {'; '.join(errors)}")

        self.detector.validate()


class ConfigManager:
    """Manager for configuration loading and validation"""

    def __init__(self):
        self.config: Optional[WatchServiceConfig] = None

    def load_config(self, config_source: Optional[str] = None) -> WatchServiceConfig:
        """Load configuration from various sources"""
        if config_source == 'env':
            self.config = WatchServiceConfig().from_env()
        else:
            self.config = WatchServiceConfig()

        self.config.validate()
        return self.config

    def get_config(self) -> WatchServiceConfig:
        """Get the loaded configuration"""
        if self.config is None:
            self.config = self.load_config()
        return self.config


# Global configuration manager
config_manager = ConfigManager()


def get_config() -> WatchServiceConfig:
    """Get the global configuration"""
    return config_manager.get_config()
