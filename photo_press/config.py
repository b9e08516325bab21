"""Configuration and settings management."""
import json
import logging
from pathlib import Path
from dataclasses import dataclass, asdict

from platformdirs import user_config_dir

from .encoders import MAX_QUALITY, MIN_QUALITY, OutputFormat

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration operations fail."""
    pass


@dataclass
class AppSettings:
    """Application settings."""
    default_format: str = "jpeg"
    default_quality: int = 80
    keep_aspect_ratio: bool = True
    archive_prefix: str = "compressed"
    png_compress_level: int = 6

    def to_dict(self) -> dict:
        """Convert settings to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'AppSettings':
        """Create settings from dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def validate(self) -> 'AppSettings':
        """
        Check that the settings describe a usable export configuration.

        Raises:
            ConfigError: If a value is out of range
        """
        try:
            OutputFormat.parse(self.default_format)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        if not MIN_QUALITY <= self.default_quality <= MAX_QUALITY:
            raise ConfigError(f"default_quality must be in [{MIN_QUALITY}, {MAX_QUALITY}], got {self.default_quality}")
        if not 0 <= self.png_compress_level <= 9:
            raise ConfigError(f"png_compress_level must be in [0, 9], got {self.png_compress_level}")
        if not self.archive_prefix:
            raise ConfigError("archive_prefix must not be empty")
        return self


def get_config_path() -> Path:
    """
    Get the path to the configuration file.

    Returns:
        Path to settings.json
    """
    config_dir = Path(user_config_dir("PhotoPress"))
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir / "settings.json"


def load_settings() -> AppSettings:
    """
    Load settings from disk.

    Returns:
        AppSettings object with loaded settings
    """
    config_path = get_config_path()

    if not config_path.exists():
        logger.info("No settings file found, using defaults")
        return AppSettings()

    try:
        with open(config_path, 'r') as f:
            data = json.load(f)
        settings = AppSettings.from_dict(data).validate()
        logger.info(f"Loaded settings from {config_path}")
        return settings
    except (OSError, ValueError, TypeError, ConfigError) as e:
        logger.warning(f"Failed to load settings: {e}, using defaults")
        return AppSettings()


def save_settings(settings: AppSettings) -> None:
    """
    Save settings to disk.

    Args:
        settings: AppSettings object to save

    Raises:
        ConfigError: If save fails
    """
    settings.validate()
    config_path = get_config_path()

    try:
        with open(config_path, 'w') as f:
            json.dump(settings.to_dict(), f, indent=2)
        logger.info(f"Saved settings to {config_path}")
    except (OSError, TypeError) as e:
        logger.error(f"Failed to save settings: {e}")
        raise ConfigError(f"Failed to save settings: {str(e)}") from e
