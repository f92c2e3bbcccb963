"""
Harvester settings.

Settings come from three layers, later ones winning:
1. Defaults on the Settings model
2. A JSON settings file (``--settings`` or HARVESTER_SETTINGS)
3. Environment variables (HARVESTER_<FIELD>, plus EVENTFUL_API_KEY and
   EVENTFUL_BASE_URL)
"""

from pathlib import Path
from typing import Annotated, Any, Optional
import json
import os

import structlog
from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)
from pydantic_settings import SettingsError as SourceError

log = structlog.get_logger(__name__)


SETTINGS_FILE_ENV = "HARVESTER_SETTINGS"

# Keys used by older camelCase settings files
CAMEL_CASE_KEYS = {
    "eventfulAPIKey": "eventful_api_key",
    "maxPagesPerCity": "max_pages_per_city",
    "remote": "remote_url",
}


class SettingsError(Exception):
    """Raised when settings cannot be loaded."""


class SettingsFileSource(JsonConfigSettingsSource):
    """JSON settings file, accepting the legacy camelCase layout."""

    def _read_file(self, file_path: Path) -> dict[str, Any]:
        try:
            data = super()._read_file(file_path)
        except OSError as e:
            raise SettingsError(f"Cannot read settings file {file_path}: {e}") from e
        except json.JSONDecodeError as e:
            raise SettingsError(f"Settings file {file_path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise SettingsError(f"Settings file {file_path} must contain a JSON object")

        for old, new in CAMEL_CASE_KEYS.items():
            if old in data:
                data.setdefault(new, data.pop(old))

        # Nested {"admin": {"email", "password"}} form is accepted too
        admin = data.pop("admin", None)
        if isinstance(admin, dict):
            data.setdefault("admin_email", admin.get("email"))
            data.setdefault("admin_password", admin.get("password"))

        return data


class Settings(BaseSettings):
    """All tunables of the harvester."""

    model_config = SettingsConfigDict(
        env_prefix="HARVESTER_",
        env_ignore_empty=True,
        extra="ignore",
    )

    # Upstream
    eventful_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("eventful_api_key", "EVENTFUL_API_KEY"),
    )
    eventful_base_url: str = Field(
        default="http://api.eventful.com",
        validation_alias=AliasChoices("eventful_base_url", "EVENTFUL_BASE_URL"),
    )
    max_pages_per_city: int = Field(default=50, ge=1)
    search_radius_miles: int = Field(default=20, ge=1)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # Remote store
    remote_url: Optional[str] = None
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    # Job queue
    job_db_path: str = "data/jobs.sqlite3"
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    fetch_concurrency: int = Field(default=1, ge=1)
    job_retention_days: float = Field(default=7.0, ge=0)
    cities: Annotated[list[str], NoDecode] = Field(default_factory=list)

    # Health
    health_failure_threshold: int = Field(default=3, ge=1)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("cities", mode="before")
    @classmethod
    def split_cities(cls, value: Any) -> Any:
        """Cities are separated by ';' in the environment because names contain commas."""
        if isinstance(value, str):
            return [part.strip() for part in value.split(";") if part.strip()]
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, env_settings, SettingsFileSource(settings_cls)


def load_settings(path: Optional[str | Path] = None) -> Settings:
    """
    Load settings from file and environment.

    Args:
        path: JSON settings file; defaults to $HARVESTER_SETTINGS if set

    Returns:
        Validated Settings

    Raises:
        SettingsError: If the file is unreadable or a value is invalid
    """
    path = path or os.environ.get(SETTINGS_FILE_ENV)
    if path and not Path(path).is_file():
        raise SettingsError(f"Cannot read settings file {path}: no such file")

    class FileSettings(Settings):
        model_config = SettingsConfigDict(json_file=path)

    try:
        settings = FileSettings()
    except (ValidationError, SourceError) as e:
        raise SettingsError(f"Invalid settings: {e}") from e

    log.debug("settings_loaded", source=str(path) if path else "environment")
    return settings


def validate_settings(settings: Settings, require_remote: bool = True) -> list[str]:
    """
    Check settings needed to run the worker.

    Returns:
        List of error messages (empty if valid)
    """
    errors: list[str] = []

    if not settings.eventful_api_key:
        errors.append("Missing eventful_api_key (EVENTFUL_API_KEY)")

    if require_remote:
        if not settings.remote_url:
            errors.append("Missing remote_url (HARVESTER_REMOTE_URL)")
        elif not settings.remote_url.startswith(("http://", "https://")):
            errors.append(f"remote_url must be an http(s) URL, got {settings.remote_url!r}")
        if not settings.admin_email:
            errors.append("Missing admin_email (HARVESTER_ADMIN_EMAIL)")
        if not settings.admin_password:
            errors.append("Missing admin_password (HARVESTER_ADMIN_PASSWORD)")

    if settings.log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        errors.append(f"Unknown log_level: {settings.log_level}")

    return errors
