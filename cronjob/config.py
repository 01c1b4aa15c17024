"""
Configuration for the cron job service using Pydantic Settings.

Settings come from three layers, later ones winning:
1. Defaults below
2. An optional config file (`--config` or CONFIG_FILE), TOML, JSON or YAML, with
   values under a `runtime` table
3. Environment variables
"""
import json
import logging
import os
import tomllib
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import pytz
import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cronjob.utils import get_timezone

logger = logging.getLogger("Config")

CONFIG_FILE_ENV = "CONFIG_FILE"


class Settings(BaseSettings):
    """Service settings; each field is read from the environment variable named by its alias."""

    model_config = SettingsConfigDict(
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Storage and dispatch
    db_url: str = Field(default="sqlite:///cronjob.db", validation_alias="CRON_DB_URL")
    ingress_url: str = Field(default="http://localhost:8080", validation_alias="INGRESS_URL")
    dispatch_timeout: float = Field(default=30.0, validation_alias="DISPATCH_TIMEOUT")  # seconds

    # Server
    host: str = Field(default="0.0.0.0", validation_alias="HOST")
    port: int = Field(default=9080, validation_alias="PORT")

    # Runtime
    poll_interval: float = Field(default=1.0, validation_alias="RUNTIME_POLL_INTERVAL")  # seconds
    max_retry_attempts: int = Field(
        default=0, ge=0, validation_alias="MAX_RETRY_ATTEMPTS"
    )  # 0 retries without limit
    retry_initial_interval: float = Field(default=0.5, validation_alias="RETRY_INITIAL_INTERVAL")
    retry_max_interval: float = Field(default=60.0, validation_alias="RETRY_MAX_INTERVAL")
    cleanup_retention_days: int = Field(default=7, ge=0, validation_alias="CLEANUP_RETENTION_DAYS")

    # Schedules
    schedule_timezone: str = Field(default="UTC", validation_alias="SCHEDULE_TIMEZONE")

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        # Environment variables override values passed in from a config file
        return env_settings, init_settings

    @field_validator("schedule_timezone")
    @classmethod
    def known_timezone(cls, value: str) -> str:
        try:
            get_timezone(value)
        except pytz.UnknownTimeZoneError as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.cleanup_retention_days)


ENV_VARS = {name: field.validation_alias for name, field in Settings.model_fields.items()}


def read_config_file(path: str) -> dict[str, Any]:
    """
    Read the `runtime` table of a TOML, JSON or YAML config file.

    Raises:
        ValueError: If the file extension is not .toml, .json, .yaml or .yml.
    """
    config_path = Path(path)
    if config_path.suffix == ".toml":
        with config_path.open("rb") as f:
            data = tomllib.load(f)
    elif config_path.suffix == ".json":
        with config_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    elif config_path.suffix in (".yaml", ".yml"):
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    else:
        raise ValueError(
            f"Unsupported config file type: {config_path.suffix} (use .toml, .json or .yaml)"
        )
    return data.get("runtime") or {}


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Load settings from defaults, the config file and the environment.

    Raises:
        ValueError: If a value is not valid for its setting (pydantic ValidationError),
            including an unknown SCHEDULE_TIMEZONE.
    """
    values: dict[str, Any] = {}

    config_path = config_path or os.getenv(CONFIG_FILE_ENV)
    if config_path:
        for name, value in read_config_file(config_path).items():
            if name not in Settings.model_fields:
                logger.warning(f"Ignoring unknown setting '{name}' in {config_path}")
                continue
            values[name] = value
        logger.info(f"Loaded config file: {config_path}")

    return Settings(**values)
