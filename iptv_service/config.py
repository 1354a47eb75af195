from pathlib import Path
import logging

from croniter import croniter
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class CustomSettings(BaseSettings):
    """Application settings loaded from environment variables.

    Validates configuration at startup to catch misconfiguration early.
    """

    data_dir: str = "./data"
    database_path: str = "./data/iptv.db"
    default_profile_id: str = "default"

    http_timeout_sec: float = 30.0
    playlist_ttl_hours: int = 24
    guide_refresh_after_min: int = 15
    guide_empty_retry_sec: int = 30
    guide_deadline_sec: float = 90.0
    guide_candidate_timeout_sec: float = 60.0
    guide_max_candidates: int = 2
    guide_parse_timeout_sec: int = 600  # 0 disables timeout

    short_epg_concurrency: int = 40
    short_epg_channel_cap: int = 500
    short_epg_wait_sec: float = 30.0

    max_snapshot_cache_mb: int = 25

    guide_refresh_cron: str = "*/15 * * * *"
    guide_refresh_misfire_grace_sec: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("data_dir", "database_path")
    @classmethod
    def validate_paths(cls, value: str, info) -> str:
        """Validate storage paths are accessible."""
        path = Path(value)
        target = path if info.field_name == "data_dir" else path.parent
        try:
            target.mkdir(parents=True, exist_ok=True)
            return value
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot access {info.field_name} '{value}': {exc}") from exc

    @field_validator("default_profile_id")
    @classmethod
    def validate_profile_id(cls, value: str) -> str:
        """Profile ids become file name prefixes."""
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("default_profile_id must not be blank")
        if any(sep in cleaned for sep in ("/", "\\", "..")):
            raise ValueError("default_profile_id must not contain path separators")
        return cleaned

    @field_validator(
        "http_timeout_sec",
        "guide_deadline_sec",
        "guide_candidate_timeout_sec",
        "short_epg_wait_sec",
    )
    @classmethod
    def validate_positive_floats(cls, value: float, info) -> float:
        """Ensure timeouts are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator(
        "playlist_ttl_hours",
        "guide_refresh_after_min",
        "guide_max_candidates",
        "short_epg_concurrency",
        "short_epg_channel_cap",
        "max_snapshot_cache_mb",
    )
    @classmethod
    def validate_positive_ints(cls, value: int, info) -> int:
        """Ensure integer limits are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator(
        "guide_empty_retry_sec",
        "guide_parse_timeout_sec",
        "guide_refresh_misfire_grace_sec",
    )
    @classmethod
    def validate_non_negative_ints(cls, value: int, info) -> int:
        """Ensure durations that may be disabled are non-negative."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator("guide_refresh_cron")
    @classmethod
    def validate_cron_expression(cls, value: str) -> str:
        """Validate cron expression is valid."""
        try:
            croniter(value)
            return value
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc

    @model_validator(mode="after")
    def validate_guide_timing(self):
        """Validate cross-field configuration."""
        if self.guide_candidate_timeout_sec > self.guide_deadline_sec:
            logger.warning(
                "guide_candidate_timeout_sec (%s) exceeds guide_deadline_sec (%s); "
                "the overall deadline will cut candidates short",
                self.guide_candidate_timeout_sec,
                self.guide_deadline_sec,
            )
        return self

    @property
    def cache_dir(self) -> Path:
        return Path(self.data_dir) / "iptv_cache"

    @property
    def secret_key_path(self) -> Path:
        return Path(self.data_dir) / "iptv_secret.key"

    @property
    def max_snapshot_cache_bytes(self) -> int:
        return self.max_snapshot_cache_mb * 1024 * 1024

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Data directory: %s", self.data_dir)
        logger.info("  Database: %s", self.database_path)
        logger.info("  Default profile: %s", self.default_profile_id)
        logger.info("  Playlist TTL: %sh", self.playlist_ttl_hours)
        logger.info("  Guide refresh threshold: %s min", self.guide_refresh_after_min)
        logger.info(
            "  Guide deadline: %ss (candidates: %s x %ss)",
            self.guide_deadline_sec,
            self.guide_max_candidates,
            self.guide_candidate_timeout_sec,
        )
        logger.info(
            "  Short EPG: concurrency=%s cap=%s wait=%ss",
            self.short_epg_concurrency,
            self.short_epg_channel_cap,
            self.short_epg_wait_sec,
        )
        logger.info("  Snapshot cache ceiling: %s MB", self.max_snapshot_cache_mb)
        logger.info("  Refresh schedule: %s", self.guide_refresh_cron)
        logger.info(
            "  Parse Timeout: %s seconds",
            self.guide_parse_timeout_sec or "disabled",
        )


settings = CustomSettings()


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
