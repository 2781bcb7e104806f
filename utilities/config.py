"""
Configuration management using environment variables.
Handles portal, persistence, retry and logging settings with validation and defaults.
"""

from pathlib import Path
from typing import List, Optional

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from portal.errors import ConfigError
from portal.fetcher import Credentials
from portal.models import CompletenessLevel, EntityKind, Language


class PortalConfig(BaseSettings):
    """
    Configuration class for the portal cache and notifier.
    Uses pydantic BaseSettings for environment variable management (prefix STINE_).
    """

    model_config = SettingsConfigDict(
        env_prefix="STINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra fields from .env
    )

    # Portal
    base_url: str = Field(default="https://stine.uni-hamburg.de")
    api_path: str = Field(default="/scripts/mgrqispi.dll")
    username: Optional[str] = Field(default=None)
    password: Optional[SecretStr] = Field(default=None)
    language: Language = Field(default=Language.GERMAN)
    parser: Optional[str] = Field(default=None, description="module:attribute of the page parser")

    # Persisted state
    state_dir: Path = Field(default=Path("~/.cache/stine-watch"))

    # Network behaviour
    request_timeout: int = Field(default=60)
    invocation_timeout: int = Field(default=600)
    retry_attempts: int = Field(default=2)
    retry_delay: float = Field(default=1.0)
    rate_limit_per_second: float = Field(default=2.0)

    # Session
    session_idle_minutes: int = Field(default=30)

    # Change detection
    tracked_kinds: List[EntityKind] = Field(
        default=[EntityKind.EXAM_RESULT, EntityKind.REGISTRATION_PERIOD, EntityKind.DOCUMENT]
    )
    snapshot_level: CompletenessLevel = Field(default=CompletenessLevel.SUMMARY)

    # Alerting
    min_alert_severity: str = Field(default="low")
    max_alerts_per_hour: int = Field(default=10)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")
    log_file: Optional[str] = Field(default=None)
    debug: bool = Field(default=False)

    @field_validator("state_dir")
    @classmethod
    def expand_state_dir(cls, v):
        """Expand ~ so every derived path is absolute."""
        return Path(v).expanduser()

    @field_validator("request_timeout")
    @classmethod
    def validate_timeout(cls, v):
        """Ensure timeout is reasonable."""
        if v < 5 or v > 300:
            raise ValueError("request_timeout must be between 5 and 300 seconds")
        return v

    @field_validator("invocation_timeout")
    @classmethod
    def validate_invocation_timeout(cls, v):
        """Ensure the overall invocation timeout is reasonable."""
        if v < 10 or v > 3600:
            raise ValueError("invocation_timeout must be between 10 and 3600 seconds")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v):
        """Ensure retry attempts is reasonable."""
        if v < 0 or v > 10:
            raise ValueError("retry_attempts must be between 0 and 10")
        return v

    @field_validator("retry_delay")
    @classmethod
    def validate_retry_delay(cls, v):
        if v < 0:
            raise ValueError("retry_delay cannot be negative")
        return v

    @field_validator("rate_limit_per_second")
    @classmethod
    def validate_rate_limit(cls, v):
        """Ensure rate limit is reasonable."""
        if v < 0.1 or v > 10:
            raise ValueError("rate_limit_per_second must be between 0.1 and 10")
        return v

    @field_validator("session_idle_minutes")
    @classmethod
    def validate_idle_minutes(cls, v):
        if v < 1:
            raise ValueError("session_idle_minutes must be at least 1")
        return v

    @field_validator("snapshot_level", mode="before")
    @classmethod
    def parse_snapshot_level(cls, v):
        """Accept level names like 'summary' as well as their numbers."""
        if isinstance(v, str) and not v.isdigit():
            try:
                return CompletenessLevel[v.upper()]
            except KeyError:
                raise ValueError(f"unknown completeness level: {v}")
        return v

    @field_validator("min_alert_severity")
    @classmethod
    def validate_severity(cls, v):
        valid = ["low", "medium", "high", "critical"]
        if v.lower() not in valid:
            raise ValueError(f"min_alert_severity must be one of: {valid}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Ensure log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        """Ensure log format is valid."""
        valid_formats = ["json", "console"]
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {valid_formats}")
        return v.lower()

    @property
    def cache_dir(self) -> Path:
        return self.state_dir / "cache"

    @property
    def snapshot_dir(self) -> Path:
        return self.state_dir / "snapshots"

    @property
    def session_file(self) -> Path:
        return self.state_dir / "session.json"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / ".lock"

    @property
    def periods_file(self) -> Path:
        return self.state_dir / "announced_periods.json"

    @property
    def alert_history_file(self) -> Path:
        return self.state_dir / "alert_history.json"

    def api_url(self) -> str:
        """Full URL of the portal dispatcher script."""
        return self.base_url.rstrip("/") + self.api_path

    def credentials(self) -> Credentials:
        """
        Build login credentials from the configured username and password.

        Raises:
            ConfigError: if either value is missing
        """
        if not self.username or self.password is None or not self.password.get_secret_value():
            raise ConfigError("username and password must be configured (STINE_USERNAME, STINE_PASSWORD)")
        return Credentials(username=self.username, password=self.password)

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path as Path object."""
        if self.log_file:
            return Path(self.log_file)
        return None

    def get_user_agent(self) -> str:
        """Get user agent string for requests."""
        return "stine-watch/0.1 (+cron notifier)"

    def get_headers(self) -> dict:
        """Get default headers for HTTP requests."""
        return {
            "User-Agent": self.get_user_agent(),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "de-DE,de;q=0.8,en;q=0.5",
            "Referer": self.base_url.rstrip("/") + "/",
            "Origin": self.base_url.rstrip("/"),
        }


def load_config(**overrides) -> PortalConfig:
    """
    Build a PortalConfig from the environment plus explicit overrides.

    Raises:
        ConfigError: if any value fails validation
    """
    try:
        return PortalConfig(**overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
