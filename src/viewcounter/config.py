import os
from typing import Dict, Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from viewcounter.errors import ConfigError

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ViewCounterConfig(BaseModel):
    # 0 binds an ephemeral port
    port: int = Field(default=9000, ge=0, le=65535)
    host: str = "0.0.0.0"
    database_url: str = Field(..., min_length=1, description="Database connection string")
    service_user_map: Dict[str, str] = Field(
        ..., description="Service identifier to display name, e.g. github -> GitHub"
    )
    # Badge renderer
    renderer_url: str = "https://img.shields.io/static/v1"
    badge_label: str = "Profile Views"
    badge_color: str = "brightgreen"
    # Timeouts
    request_timeout_seconds: float = Field(default=5.0, gt=0)
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)
    log_level: str = "INFO"

    @field_validator("database_url")
    @classmethod
    def normalize_database_url(cls, v):
        # SQLAlchemy dropped the "postgres" dialect alias
        if v.startswith("postgres://"):
            return "postgresql://" + v[len("postgres://") :]
        return v

    @field_validator("service_user_map")
    @classmethod
    def validate_service_user_map(cls, v):
        if not v:
            raise ValueError("service_user_map must contain at least one service")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}")
        return level

    def display_name(self, service: str) -> Optional[str]:
        """Display name for a service, or None when it is not mapped."""
        return self.service_user_map.get(service)


def parse_service_user_map(raw: str) -> Dict[str, str]:
    """Parse ``key:value,key:value`` into a dict."""
    result = {}
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        key, sep, value = pair.partition(":")
        if not sep or not key.strip():
            raise ConfigError(f"Invalid SERVICE_USER_MAP entry: {pair!r}")
        result[key.strip()] = value.strip()
    return result


def load_config(config_path: str = "viewcounter.yml") -> ViewCounterConfig:
    """Load configuration from YAML file with environment variable overrides."""
    config_data: Dict[str, Any] = {}

    try:
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        # File doesn't exist, rely on environment
        pass
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config file {config_path}: {e}") from e

    if not isinstance(config_data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    _load_from_environment(config_data)

    try:
        return ViewCounterConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def _load_from_environment(config_data: Dict[str, Any]):
    """Apply environment variables on top of file values."""
    field_mappings = {
        "PORT": ("port", int),
        "HOST": ("host", str),
        "DATABASE_URL": ("database_url", str),
        "SERVICE_USER_MAP": ("service_user_map", parse_service_user_map),
        "RENDERER_URL": ("renderer_url", str),
        "BADGE_LABEL": ("badge_label", str),
        "BADGE_COLOR": ("badge_color", str),
        "REQUEST_TIMEOUT_SECONDS": ("request_timeout_seconds", float),
        "SHUTDOWN_GRACE_SECONDS": ("shutdown_grace_seconds", float),
        "LOG_LEVEL": ("log_level", str),
    }

    for env_key, (config_field, convert) in field_mappings.items():
        env_value = os.getenv(env_key)
        if env_value is None:
            continue
        try:
            config_data[config_field] = convert(env_value)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {env_key}: {env_value} ({e})") from e
