"""
Manages loading, saving, and validating the service configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`),
a manager class (`ConfigManager`) that persists it to a JSON file, and
`load_settings`, which overlays environment variables on top of the file.
"""

import os
import json
import time
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator, ValidationError

from .constants import DEFAULT_DOWNLOAD_DIR, DEFAULT_BIN_DIR, LOG_DIR


class Settings(BaseModel):
    """
    Defines the service's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    host: str = '0.0.0.0'
    port: int = Field(default=3000, ge=1, le=65535)
    download_dir: Path = DEFAULT_DOWNLOAD_DIR
    bin_dir: Path = DEFAULT_BIN_DIR

    max_concurrent_jobs: int = Field(default=2, ge=1, le=16)
    max_pending_jobs: int = Field(default=10, ge=0, le=1000)
    job_timeout_seconds: float = Field(default=300, gt=0)
    metadata_timeout_seconds: float = Field(default=60, gt=0)

    rate_limit_enabled: bool = True
    rate_limit_requests: int = Field(default=10, ge=1)
    rate_limit_window_seconds: float = Field(default=60, gt=0)

    janitor_interval_seconds: float = Field(default=120, gt=0)
    file_max_age_seconds: float = Field(default=180, gt=0)
    record_max_age_seconds: float = Field(default=300, gt=0)
    download_grace_seconds: float = Field(default=5, ge=0)
    progress_interval_seconds: float = Field(default=0.5, gt=0)

    auto_provision: bool = True
    check_for_updates_on_startup: bool = True
    log_level: str = 'INFO'
    log_dir: Path = LOG_DIR

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('download_dir', 'bin_dir', 'log_dir')
    @classmethod
    def expand_user_path(cls, value: Path) -> Path:
        """Expands a leading '~' so paths from JSON or the environment work as typed."""
        return Path(value).expanduser()


# Environment variable -> Settings field
ENV_OVERRIDES: Dict[str, str] = {
    'PORT': 'port',
    'HOST': 'host',
    'DOWNLOAD_DIR': 'download_dir',
    'BIN_DIR': 'bin_dir',
    'MAX_CONCURRENT_JOBS': 'max_concurrent_jobs',
    'MAX_PENDING_JOBS': 'max_pending_jobs',
    'LOG_LEVEL': 'log_level',
}


class ConfigManager:
    """Handles loading and saving the configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        # Ensure the configuration directory exists
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")


def load_settings(config_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Builds the effective settings for this process.

    File values (from `config_path`, or the TUBEGRAB_CONFIG variable) are used as
    the base and any recognised environment variables are applied on top.

    Raises:
        ValidationError: If an environment override holds an invalid value.
    """
    environ = os.environ if environ is None else environ
    if config_path is None and environ.get('TUBEGRAB_CONFIG'):
        config_path = Path(environ['TUBEGRAB_CONFIG']).expanduser()

    settings = ConfigManager(config_path).load() if config_path else Settings()

    overrides = {field: environ[var] for var, field in ENV_OVERRIDES.items() if environ.get(var)}
    if not overrides:
        return settings
    return Settings.model_validate({**settings.model_dump(), **overrides})
