"""
Settings Module for Uptime Sentinel

Configuration management using Pydantic Settings.
Supports environment variables, .env files, and runtime configuration.
Every section carries its own env prefix; ``Settings`` aggregates them.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Set
from enum import Enum

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from config.constants import Buckets, Defaults, Limits, PlanTier


class Environment(str, Enum):
    """Application environment enumeration."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Logging level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"


class RateLimitBackend(str, Enum):
    """Counter store backing the rate limiter."""
    MEMORY = "memory"
    REDIS = "redis"


def _split_csv(v: Any) -> Any:
    if isinstance(v, str):
        return [x.strip() for x in v.split(",") if x.strip()]
    return v


class BaseSettingsConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_default=True
    )


class DatabaseSettings(BaseSettingsConfig):
    """
    Database Configuration Settings

    Supports PostgreSQL (production) and SQLite (development, tests).
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        extra="ignore"
    )

    type: DatabaseType = Field(
        default=DatabaseType.SQLITE,
        description="Database type: postgresql or sqlite"
    )

    # PostgreSQL settings
    host: str = Field(
        default="localhost",
        description="Database host address"
    )
    port: int = Field(
        default=5432,
        ge=1,
        le=65535,
        description="Database port number"
    )
    name: str = Field(
        default="uptime_sentinel",
        min_length=1,
        max_length=64,
        description="Database name"
    )
    user: str = Field(
        default="postgres",
        min_length=1,
        max_length=64,
        description="Database username"
    )
    password: SecretStr = Field(
        default=SecretStr(""),
        description="Database password"
    )

    # SQLite settings
    sqlite_path: Path = Field(
        default=Path("data/uptime_sentinel.db"),
        description="Path to SQLite database file"
    )

    # Connection pool settings
    pool_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Connection pool size"
    )
    max_overflow: int = Field(
        default=20,
        ge=0,
        le=100,
        description="Maximum overflow connections"
    )
    pool_timeout: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Pool connection timeout in seconds"
    )
    pool_recycle: int = Field(
        default=1800,
        ge=60,
        le=7200,
        description="Connection recycle time in seconds"
    )
    pool_pre_ping: bool = Field(
        default=True,
        description="Enable connection health check before use"
    )

    echo: bool = Field(
        default=False,
        description="Echo SQL queries (debug mode)"
    )
    auto_create_tables: bool = Field(
        default=True,
        description="Create missing tables on startup"
    )

    @property
    def url(self) -> str:
        """Generate database URL based on configuration."""
        if self.type == DatabaseType.SQLITE:
            self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            return f"sqlite+aiosqlite:///{self.sqlite_path}"

        password = self.password.get_secret_value()
        return (
            f"postgresql+asyncpg://{self.user}:{password}"
            f"@{self.host}:{self.port}/{self.name}"
        )

    @property
    def is_sqlite(self) -> bool:
        return self.type == DatabaseType.SQLITE

    @field_validator("sqlite_path")
    @classmethod
    def validate_sqlite_path(cls, v: Path) -> Path:
        """Validate and normalize SQLite path."""
        if not v.suffix:
            v = v.with_suffix(".db")
        return v


class MonitoringSettings(BaseSettingsConfig):
    """
    Monitoring Engine Configuration Settings

    Controls plan cadence, probe timeouts, worker pool sizing
    and the alert debounce/reminder policy.
    """

    model_config = SettingsConfigDict(
        env_prefix="MONITOR_",
        env_file=".env",
        extra="ignore"
    )

    # Cadence per plan tier, in seconds
    plan_intervals: Dict[str, int] = Field(
        default_factory=lambda: {
            PlanTier.FREE.value: 300,
            PlanTier.PRO.value: 60,
            PlanTier.FOUNDER.value: 60,
        },
        description="Check interval in seconds for each plan tier"
    )
    sweep_interval: int = Field(
        default=30,
        ge=5,
        le=3600,
        description="How often the scheduler runs a monitoring pass"
    )

    # HTTP client settings
    request_timeout: float = Field(
        default=Defaults.REQUEST_TIMEOUT,
        ge=Limits.MIN_TIMEOUT,
        le=Limits.MAX_TIMEOUT,
        description="Hard per-probe timeout in seconds"
    )
    max_redirects: int = Field(
        default=Defaults.MAX_REDIRECTS,
        ge=0,
        le=20,
        description="Maximum redirect hops followed per probe"
    )
    user_agent: str = Field(
        default=Defaults.USER_AGENT,
        description="User agent string for outbound requests"
    )
    verify_ssl: bool = Field(
        default=True,
        description="Verify TLS certificates"
    )

    # Concurrency settings
    max_concurrent_checks: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Worker pool size for a monitoring pass"
    )
    batch_size: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Targets dispatched per batch"
    )
    batch_delay: float = Field(
        default=0.5,
        ge=0.0,
        le=60.0,
        description="Pause between batches in seconds"
    )

    # Alert settings
    debounce_threshold: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Consecutive down results required to open an alert"
    )
    reminder_interval: int = Field(
        default=0,
        ge=0,
        le=86400,
        description="Seconds between 'still down' reminders (0 disables)"
    )
    max_reminders_per_hour: int = Field(
        default=2,
        ge=0,
        le=60,
        description="Cap on reminders per target per rolling hour"
    )

    # History retention
    check_retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Days of check history to keep"
    )

    @field_validator("plan_intervals")
    @classmethod
    def validate_plan_intervals(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Every tier needs a positive interval."""
        normalized = {str(k).lower(): int(s) for k, s in v.items()}
        for tier in PlanTier:
            if tier.value not in normalized:
                raise ValueError(f"Missing interval for plan tier '{tier.value}'")
        if any(seconds <= 0 for seconds in normalized.values()):
            raise ValueError("Plan intervals must be positive")
        return normalized


class SafetySettings(BaseSettingsConfig):
    """
    Outbound Safety Guard Settings

    Destination policy applied before every outbound request.
    """

    model_config = SettingsConfigDict(
        env_prefix="SAFETY_",
        env_file=".env",
        extra="ignore"
    )

    dns_timeout: float = Field(
        default=Defaults.DNS_TIMEOUT,
        gt=0,
        le=30.0,
        description="DNS resolution timeout in seconds"
    )
    allowed_ports: Set[int] = Field(
        default_factory=lambda: {80, 443, 8080, 8443},
        description="Destination ports outbound requests may use"
    )
    ipv6_allowlist: List[str] = Field(
        default_factory=list,
        description="IPv6 networks exempt from the blanket IPv6 restriction"
    )
    blocked_domains: Set[str] = Field(
        default_factory=set,
        description="Extra hostnames (and their subdomains) that are never probed"
    )

    @field_validator("allowed_ports", "blocked_domains", "ipv6_allowlist", mode="before")
    @classmethod
    def parse_lists(cls, v: Any) -> Any:
        """Accept comma separated strings."""
        return _split_csv(v)


class RateRule(BaseModel):
    """A sliding-window allowance: ``max_count`` calls per ``window_seconds``."""

    max_count: int = Field(ge=0)
    window_seconds: int = Field(gt=0)


class BucketPolicy(BaseModel):
    """Per-bucket rules: one for client IPs, one per plan tier for users."""

    ip: Optional[RateRule] = None
    users: Dict[str, RateRule] = Field(default_factory=dict)

    def rule_for_plan(self, plan: Optional[str]) -> Optional[RateRule]:
        if not self.users:
            return None
        tier = PlanTier.parse(plan).value
        return self.users.get(tier) or self.users.get(PlanTier.FREE.value)


def _default_buckets() -> Dict[str, BucketPolicy]:
    hour = 3600
    return {
        Buckets.PING: BucketPolicy(
            ip=RateRule(max_count=50, window_seconds=hour),
            users={
                PlanTier.FREE.value: RateRule(max_count=100, window_seconds=hour),
                PlanTier.PRO.value: RateRule(max_count=1000, window_seconds=hour),
                PlanTier.FOUNDER.value: RateRule(max_count=10000, window_seconds=hour),
            },
        ),
        Buckets.CRAWL: BucketPolicy(
            ip=RateRule(max_count=2, window_seconds=hour),
            users={
                PlanTier.FREE.value: RateRule(max_count=5, window_seconds=hour),
                PlanTier.PRO.value: RateRule(max_count=50, window_seconds=hour),
                PlanTier.FOUNDER.value: RateRule(max_count=500, window_seconds=hour),
            },
        ),
        Buckets.PASS: BucketPolicy(
            ip=RateRule(max_count=10, window_seconds=hour),
            users={
                PlanTier.FREE.value: RateRule(max_count=10, window_seconds=hour),
            },
        ),
    }


class RateLimitSettings(BaseSettingsConfig):
    """
    Rate Limiting Settings

    Selects the counter store and holds the per-bucket policies.
    """

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        env_file=".env",
        extra="ignore"
    )

    enabled: bool = Field(
        default=True,
        description="Enable rate limiting of trigger interfaces"
    )
    backend: RateLimitBackend = Field(
        default=RateLimitBackend.MEMORY,
        description="Counter store: 'memory' (single process) or 'redis' (shared)"
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the shared counter store"
    )
    redis_timeout: float = Field(
        default=2.0,
        gt=0,
        le=30.0,
        description="Redis socket timeout in seconds"
    )
    key_prefix: str = Field(
        default="sentinel:ratelimit:",
        description="Prefix for counter store keys"
    )
    buckets: Dict[str, BucketPolicy] = Field(
        default_factory=_default_buckets,
        description="Bucket policies keyed by bucket name"
    )
    idle_purge_interval: int = Field(
        default=600,
        ge=10,
        le=86400,
        description="How often idle in-memory windows are garbage collected"
    )

    def policy(self, bucket: str) -> Optional[BucketPolicy]:
        return self.buckets.get(bucket)


class CrawlerSettings(BaseSettingsConfig):
    """
    Dead-Link Crawler Settings
    """

    model_config = SettingsConfigDict(
        env_prefix="CRAWLER_",
        env_file=".env",
        extra="ignore"
    )

    batch_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Links checked concurrently per batch"
    )
    batch_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Pause between link batches in seconds"
    )
    max_links: int = Field(
        default=500,
        ge=1,
        le=10000,
        description="Maximum links checked per crawl"
    )
    max_page_bytes: int = Field(
        default=Limits.MAX_PAGE_BYTES,
        ge=1024,
        description="Maximum bytes of the root page that are parsed"
    )
    max_redirects: int = Field(
        default=2,
        ge=0,
        le=20,
        description="Maximum redirect hops followed per link"
    )
    soft_block_status_codes: Set[int] = Field(
        default_factory=lambda: set(Defaults.SOFT_BLOCK_STATUSES),
        description="Statuses reported as unknown instead of broken"
    )
    stale_after: int = Field(
        default=3600,
        ge=60,
        description="Seconds after which a crawl still marked running is considered abandoned"
    )

    @field_validator("soft_block_status_codes", mode="before")
    @classmethod
    def parse_status_codes(cls, v: Any) -> Any:
        """Parse status codes from a comma separated string."""
        return _split_csv(v)


class NotificationSettings(BaseSettingsConfig):
    """
    Notification Dispatch Settings

    The mail collaborator is an external HTTP endpoint; without one
    notifications are only logged.
    """

    model_config = SettingsConfigDict(
        env_prefix="NOTIFY_",
        env_file=".env",
        extra="ignore"
    )

    mail_endpoint: Optional[str] = Field(
        default=None,
        description="URL of the mail dispatch collaborator"
    )
    api_token: Optional[SecretStr] = Field(
        default=None,
        description="Bearer token for the mail collaborator"
    )
    sender: str = Field(
        default="alerts@uptime-sentinel.local",
        description="From address passed to the mail collaborator"
    )
    timeout: float = Field(
        default=10.0,
        gt=0,
        le=60.0,
        description="Mail request timeout in seconds"
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries per notification"
    )
    retry_base_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Base delay for exponential retry back-off"
    )
    queue_size: int = Field(
        default=1000,
        ge=1,
        le=100000,
        description="Maximum queued notifications"
    )


class IdentitySettings(BaseSettingsConfig):
    """
    Static identity data used when no account service is wired in.
    """

    model_config = SettingsConfigDict(
        env_prefix="IDENTITY_",
        env_file=".env",
        extra="ignore"
    )

    plans: Dict[str, PlanTier] = Field(
        default_factory=dict,
        description="Actor id to plan tier"
    )
    contacts: Dict[str, str] = Field(
        default_factory=dict,
        description="Actor id to notification address"
    )


class LoggingSettings(BaseSettingsConfig):
    """
    Logging Configuration Settings
    """

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore"
    )

    level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Minimum logging level"
    )
    console_enabled: bool = Field(
        default=True,
        description="Enable console logging"
    )
    console_colored: bool = Field(
        default=True,
        description="Enable colored console output"
    )

    file_enabled: bool = Field(
        default=False,
        description="Enable file logging"
    )
    file_path: Path = Field(
        default=Path("logs/uptime_sentinel.log"),
        description="Log file path"
    )
    file_rotation: str = Field(
        default="10 MB",
        description="Log rotation size (e.g., '10 MB', '1 day')"
    )
    file_retention: str = Field(
        default="30 days",
        description="Log retention period"
    )
    file_compression: str = Field(
        default="gz",
        description="Compression format for rotated logs"
    )

    error_file_enabled: bool = Field(
        default=False,
        description="Enable separate error log file"
    )
    error_file_path: Path = Field(
        default=Path("logs/errors.log"),
        description="Error log file path"
    )

    json_enabled: bool = Field(
        default=False,
        description="Serialize file records as JSON"
    )


class ServerSettings(BaseSettingsConfig):
    """
    Trigger HTTP Server Settings
    """

    model_config = SettingsConfigDict(
        env_prefix="SERVER_",
        env_file=".env",
        extra="ignore"
    )

    enabled: bool = Field(
        default=True,
        description="Serve the trigger HTTP interface"
    )
    host: str = Field(
        default="0.0.0.0",
        description="Bind address"
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Bind port"
    )
    service_token: Optional[SecretStr] = Field(
        default=None,
        description="Bearer token required on trigger endpoints"
    )
    trust_forwarded_headers: bool = Field(
        default=False,
        description=(
            "Take the client IP from X-Forwarded-For / X-Real-IP. Enable only "
            "behind a reverse proxy that overwrites these headers"
        )
    )


class Settings(BaseSettingsConfig):
    """
    Main Settings Class

    Aggregates all settings sections and provides the main
    configuration interface for the application.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    app_name: str = Field(
        default="Uptime Sentinel",
        description="Application name"
    )
    app_version: str = Field(
        default="2.0.0",
        description="Application version"
    )

    # Nested settings
    database: DatabaseSettings = Field(
        default_factory=DatabaseSettings
    )
    monitoring: MonitoringSettings = Field(
        default_factory=MonitoringSettings
    )
    safety: SafetySettings = Field(
        default_factory=SafetySettings
    )
    rate_limit: RateLimitSettings = Field(
        default_factory=RateLimitSettings
    )
    crawler: CrawlerSettings = Field(
        default_factory=CrawlerSettings
    )
    notifications: NotificationSettings = Field(
        default_factory=NotificationSettings
    )
    identity: IdentitySettings = Field(
        default_factory=IdentitySettings
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings
    )
    server: ServerSettings = Field(
        default_factory=ServerSettings
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT

    @model_validator(mode="after")
    def configure_for_environment(self) -> "Settings":
        """Apply environment-specific configuration."""
        if self.is_production:
            self.debug = False
            self.database.echo = False
            if self.server.enabled and self.server.service_token is None:
                raise ValueError("SERVER_SERVICE_TOKEN is required in production")

        elif self.is_development:
            if self.logging.level == LogLevel.INFO and self.debug:
                self.logging.level = LogLevel.DEBUG

        return self

    def to_dict(self, *, exclude_secrets: bool = True) -> Dict[str, Any]:
        """Convert settings to dictionary."""
        data = self.model_dump(mode="json")

        if exclude_secrets:
            def remove_secrets(obj: Any) -> Any:
                if isinstance(obj, dict):
                    return {
                        k: remove_secrets(v)
                        for k, v in obj.items()
                        if "password" not in k.lower()
                        and "secret" not in k.lower()
                        and "token" not in k.lower()
                    }
                elif isinstance(obj, list):
                    return [remove_secrets(item) for item in obj]
                return obj

            data = remove_secrets(data)

        return data


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    This function is cached to ensure a single settings instance
    is used throughout the application lifecycle.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
