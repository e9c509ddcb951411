from pathlib import Path
import logging

from croniter import croniter
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
)
DEFAULT_STALKER_USER_AGENT = (
    "Mozilla/5.0 (QtEmbedded; U; Linux; C) AppleWebKit/533.3 "
    "(KHTML, like Gecko) MAG200 stbapp ver: 2 rev: 250 Safari/533.3"
)


class CustomSettings(BaseSettings):
    """Ingestion settings loaded from environment variables.

    Validates configuration at startup to catch misconfiguration early.
    """

    database_path: str = "./data/iptv.db"
    log_level: str = "INFO"

    sync_refresh_cron: str = "*/30 * * * *"  # Check for stale playlists every 30 min
    sync_misfire_grace_sec: int = 600
    sync_stale_after_minutes: int = 720  # Re-sync playlists older than 12 hours
    max_concurrent_syncs: int = 3  # Slow portals choke on parallel sessions

    http_timeout_sec: float = 60.0
    http_max_retries: int = 3
    http_backoff_initial_sec: float = 1.0
    http_backoff_factor: float = 2.0
    http_backoff_max_sec: float = 30.0
    rate_limit_backoff_sec: float = 5.0

    user_agent: str = DEFAULT_USER_AGENT
    xtream_output: str = "ts"
    stalker_user_agent: str = DEFAULT_STALKER_USER_AGENT
    stalker_token_ttl_sec: int = 1500
    stalker_epg_period_hours: int = 24

    epg_enabled: bool = True
    epg_past_days: int = 1
    epg_future_days: int = 3
    epg_parse_timeout_sec: int = 300  # XML parsing timeout, 0 disables timeout

    model_config = SettingsConfigDict(
        env_prefix="IPTV_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, value: str) -> str:
        """Validate database path is accessible."""
        if value == ":memory:":
            return value
        path = Path(value)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return value
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot access database path '{value}': {exc}") from exc

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate log level name."""
        normalized = value.upper()
        allowed = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
        if normalized not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return normalized

    @field_validator("sync_refresh_cron")
    @classmethod
    def validate_cron_expression(cls, value: str) -> str:
        """Validate cron expression is valid."""
        try:
            croniter(value)
            return value
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc

    @field_validator(
        "sync_stale_after_minutes",
        "max_concurrent_syncs",
        "stalker_token_ttl_sec",
        "stalker_epg_period_hours",
    )
    @classmethod
    def validate_positive_ints(cls, value: int, info) -> int:
        """Ensure integer settings are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator(
        "sync_misfire_grace_sec",
        "http_max_retries",
        "epg_parse_timeout_sec",
        "epg_past_days",
        "epg_future_days",
    )
    @classmethod
    def validate_non_negative_ints(cls, value: int, info) -> int:
        """Ensure integer settings are non-negative."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator(
        "http_timeout_sec",
        "http_backoff_factor",
        "http_backoff_max_sec",
    )
    @classmethod
    def validate_positive_floats(cls, value: float, info) -> float:
        """Ensure floating-point settings are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("http_backoff_initial_sec", "rate_limit_backoff_sec")
    @classmethod
    def validate_non_negative_floats(cls, value: float, info) -> float:
        """Ensure waits are non-negative (0 disables waiting)."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator("http_backoff_factor")
    @classmethod
    def validate_backoff_multiplier(cls, value: float) -> float:
        """Ensure the backoff multiplier is at least 1."""
        if value < 1:
            raise ValueError("http_backoff_factor must be >= 1")
        return value

    @field_validator("xtream_output")
    @classmethod
    def validate_xtream_output(cls, value: str) -> str:
        """Validate Xtream stream container extension."""
        normalized = value.lower().lstrip(".")
        allowed = {"ts", "m3u8", "rtmp"}
        if normalized not in allowed:
            raise ValueError(f"xtream_output must be one of {sorted(allowed)}")
        return normalized

    @model_validator(mode="after")
    def validate_epg_window(self):
        """Validate cross-field configuration."""
        if self.epg_enabled and self.epg_past_days == 0 and self.epg_future_days == 0:
            raise ValueError(
                "At least one of epg_past_days or epg_future_days must be > 0 when EPG is enabled"
            )
        return self

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Database: %s", self.database_path)
        logger.info("  Refresh Schedule: %s", self.sync_refresh_cron)
        logger.info("  Stale After: %s minutes", self.sync_stale_after_minutes)
        logger.info("  Max Concurrent Syncs: %s", self.max_concurrent_syncs)
        logger.info(
            "  HTTP: timeout=%.1fs retries=%s backoff=%.1f max=%.1fs",
            self.http_timeout_sec,
            self.http_max_retries,
            self.http_backoff_factor,
            self.http_backoff_max_sec,
        )
        logger.info("  Rate Limit Backoff: %.1fs", self.rate_limit_backoff_sec)
        logger.info(
            "  EPG: %s (past %s days, future %s days)",
            "enabled" if self.epg_enabled else "disabled",
            self.epg_past_days,
            self.epg_future_days,
        )
        logger.info(
            "  Parse Timeout: %s seconds",
            self.epg_parse_timeout_sec or "disabled",
        )


settings = CustomSettings()


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
