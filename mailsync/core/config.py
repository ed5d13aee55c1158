"""Engine configuration (settings and environment).

Single source of truth for all configuration. Uses pydantic-settings
with .env support. The credential encryption key is validated at load
time because every stored token depends on it.
"""

import base64
import binascii
from functools import lru_cache

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment and .env.

    Only credential_encryption_key is required; everything else has a
    default tuned for a single engine process.
    """

    # App
    app_name: str = "mailsync"
    app_version: str = "1.0.0"
    debug: bool = False

    # Database (SQLAlchemy async URL, e.g. postgresql+asyncpg://...)
    database_url: str = ""
    database_echo: bool = False
    db_pool_size: int | None = None
    db_max_overflow: int | None = None
    db_command_timeout: int | None = None

    # Credential vault: base64 of 32 random bytes (openssl rand -base64 32).
    credential_encryption_key: SecretStr = SecretStr("")

    # OAuth clients (used for token refresh only)
    google_client_id: str = ""
    google_client_secret: SecretStr = SecretStr("")
    google_token_endpoint: str = "https://oauth2.googleapis.com/token"
    microsoft_client_id: str = ""
    microsoft_client_secret: SecretStr = SecretStr("")
    microsoft_tenant: str = "common"
    microsoft_scopes: str = (
        "https://graph.microsoft.com/Mail.ReadWrite "
        "https://graph.microsoft.com/Mail.Send "
        "https://graph.microsoft.com/Calendars.Read "
        "https://graph.microsoft.com/Contacts.Read "
        "https://graph.microsoft.com/User.Read"
    )

    # Timeouts (seconds). Adapter call timeout and job timeout are independent.
    adapter_call_timeout_seconds: float = 120.0
    health_check_timeout_seconds: float = 10.0
    token_refresh_timeout_seconds: float = 15.0
    job_timeout_seconds: float = 300.0
    http_timeout_seconds: float = 30.0
    token_expiry_skew_seconds: int = 60

    # Worker pool lanes
    lane_workers_high: int = 17
    lane_workers_normal: int = 10
    lane_workers_low: int = 7
    lane_capacity_high: int = 500
    lane_capacity_normal: int = 1000
    lane_capacity_low: int = 2000
    dead_letter_buffer_size: int = 200

    # Executor retries
    transient_max_attempts: int = 3
    transient_retry_base_seconds: float = 2.0

    # Scheduler cadence (minutes per activity tier 1..5)
    scheduler_poll_interval_seconds: float = 60.0
    scheduler_batch_size: int = 200
    sync_interval_tier1_minutes: int = 3
    sync_interval_tier2_minutes: int = 15
    sync_interval_tier3_minutes: int = 30
    sync_interval_tier4_minutes: int = 120
    sync_interval_tier5_minutes: int = 360
    sync_max_interval_minutes: int = 1440
    recent_activity_window_minutes: int = 60
    activity_ema_weight: float = 0.7
    rate_limit_default_backoff_seconds: int = 60
    error_streak_demotion_threshold: int = 3
    error_badge_threshold: int = 3
    # Longer than the slowest tier interval (validated below).
    full_sync_after_hours: int = 24
    full_sync_max_messages: int = 200
    incremental_sync_max_messages: int = 500
    # Comma-separated capability order; earlier scopes sync first and get the higher lane.
    capability_priority: str = "email,calendar,contacts"
    calendar_sync_window_days: int = 90

    # OpenTelemetry
    telemetry_enabled: bool = False
    telemetry_exporter: str = "console"
    telemetry_otlp_endpoint: str | None = None
    telemetry_sample_rate: float = 1.0
    telemetry_environment: str = "development"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @property
    def capability_order(self) -> list[str]:
        """Capability names from capability_priority, in order, without blanks."""
        return [
            part.strip().lower()
            for part in self.capability_priority.split(",")
            if part.strip()
        ]

    @property
    def tier_intervals_minutes(self) -> dict[int, int]:
        """Base sync interval per activity tier (1 = most active)."""
        return {
            1: self.sync_interval_tier1_minutes,
            2: self.sync_interval_tier2_minutes,
            3: self.sync_interval_tier3_minutes,
            4: self.sync_interval_tier4_minutes,
            5: self.sync_interval_tier5_minutes,
        }

    @model_validator(mode="after")
    def validate_required_and_lanes(self) -> "Settings":
        """Validate the encryption key, lane sizing and capability order.

        - CREDENTIAL_ENCRYPTION_KEY must be base64 of exactly 32 bytes (AES-256).
        - Every lane needs at least one worker and a positive capacity.
        - CAPABILITY_PRIORITY may only name email, calendar, contacts.
        - FULL_SYNC_AFTER_HOURS must be longer than the slowest tier interval.
        """
        raw_key = self.credential_encryption_key.get_secret_value()
        if not raw_key:
            raise ValueError(
                "CREDENTIAL_ENCRYPTION_KEY is required. Generate with: "
                "openssl rand -base64 32"
            )
        try:
            decoded = base64.b64decode(raw_key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("CREDENTIAL_ENCRYPTION_KEY must be valid base64") from e
        if len(decoded) != 32:
            raise ValueError(
                f"CREDENTIAL_ENCRYPTION_KEY must decode to 32 bytes, got {len(decoded)}"
            )
        for lane in ("high", "normal", "low"):
            if getattr(self, f"lane_workers_{lane}") < 1:
                raise ValueError(f"lane_workers_{lane} must be >= 1")
            if getattr(self, f"lane_capacity_{lane}") < 1:
                raise ValueError(f"lane_capacity_{lane} must be >= 1")
        unknown = set(self.capability_order) - {"email", "calendar", "contacts"}
        if unknown:
            raise ValueError(
                f"capability_priority has unknown capabilities: {sorted(unknown)}"
            )
        if self.transient_max_attempts < 1:
            raise ValueError("transient_max_attempts must be >= 1")
        if self.full_sync_after_hours * 60 <= max(self.tier_intervals_minutes.values()):
            raise ValueError("full_sync_after_hours must exceed the slowest tier interval")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return cached engine settings (single instance per process).

    Validation runs on first call, not at import time. In tests, call
    get_settings.cache_clear() before overriding env vars, or pass a
    Settings instance directly to the service under test.

    Returns:
        Loaded and validated Settings instance.
    """
    return Settings()
