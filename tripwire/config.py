"""Configuration loading for tripwire.

This module provides centralized configuration management:
- Load settings from environment variables and .env files
- Validate configuration using pydantic
- Convert settings into the immutable policies the core consumes

List-valued options are read from the environment as JSON arrays, e.g.
``TRIPWIRE_IGNORED_EXCEPTIONS='["ValueError", "myapp.errors.NotFound"]'``.
"""

from datetime import timedelta
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tripwire.core.models import (
    DEFAULT_IGNORED_EXCEPTIONS,
    DEFAULT_IGNORED_USER_AGENTS,
    DEFAULT_SANITIZE_FIELDS,
    ApmPolicy,
    NotificationRules,
    TrackingPolicy,
)
from tripwire.core.serializer import DEFAULT_FILTER_PATTERNS


class Settings(BaseSettings):
    """Application configuration loaded from environment.

    Uses pydantic-settings for environment variable handling with
    .env file support via python-dotenv. Every variable carries the
    ``TRIPWIRE_`` prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="TRIPWIRE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Tracking
    environment: str = Field(
        default="production",
        description="Deployment environment recorded on every occurrence",
    )
    app_name: str = Field(
        default="tripwire",
        description="Application name shown in notifications",
    )
    app_root: str | None = Field(
        default=None,
        description="Application root used to tell app frames from dependency frames",
    )
    ignored_exceptions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_IGNORED_EXCEPTIONS),
        description="Exception class names that are never tracked",
    )
    ignored_user_agents: list[str] = Field(
        default_factory=lambda: list(DEFAULT_IGNORED_USER_AGENTS),
        description="Case-insensitive regex patterns for user agents to skip",
    )
    middleware_ignore_paths: list[str] = Field(
        default_factory=lambda: ["/assets", "/up", "/health"],
        description="Request path prefixes that are never tracked",
    )
    backtrace_lines_limit: int = Field(
        default=50,
        description="Maximum backtrace lines stored per occurrence",
    )
    retention_days: int | None = Field(
        default=90,
        description="Days to keep occurrences; unset keeps them forever",
    )
    filter_parameters: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SANITIZE_FIELDS),
        description="Request parameter names replaced with [FILTERED]",
    )
    sanitize_fields: list[str] = Field(
        default_factory=list,
        description="Extra name fragments filtered from locals and parameters",
    )

    # Notification rules
    notification_cooldown_seconds: int = Field(
        default=300,
        description="Minimum seconds between notifications for one group; 0 disables",
    )
    notify_on_first_occurrence: bool = Field(default=True)
    notify_on_reopen: bool = Field(default=True)
    notify_on_threshold: list[int] = Field(
        default_factory=lambda: [10, 50, 100, 500, 1000],
        description="Occurrence counts that trigger a notification",
    )
    critical_exceptions: list[str] = Field(
        default_factory=list,
        description="Exception classes that always notify",
    )
    notify_in_environments: list[str] = Field(
        default_factory=lambda: ["production"],
        description="Environments in which notifications are sent",
    )

    # APM
    apm_enabled: bool = Field(default=False)
    apm_sample_rate: float = Field(
        default=1.0,
        description="Fraction of requests recorded, 0.0 to 1.0",
    )
    apm_retention_days: int = Field(default=30)
    apm_capture_spans: bool = Field(default=True)
    apm_max_spans: int = Field(default=500)
    apm_ignore_paths: list[str] = Field(
        default_factory=lambda: ["/assets", "/up", "/health"],
    )

    # Store configuration
    store_backend: Literal["sqlite", "postgresql"] = Field(
        default="sqlite",
        description="Issue store backend type",
    )
    store_sqlite_path: str = Field(
        default="./data/tripwire.db",
        description="SQLite database file path",
    )
    database_url: str = Field(
        default="",
        description="PostgreSQL connection URL",
    )
    store_pool_size: int = Field(
        default=5,
        description="Database connection pool size",
    )

    # Notification channels
    slack_webhook_url: str = Field(default="")
    slack_channel: str | None = Field(default=None)
    slack_username: str = Field(default="tripwire")
    slack_icon_emoji: str = Field(default=":rotating_light:")
    telegram_bot_token: str = Field(default="")
    telegram_chat_id: str = Field(default="")
    webhook_url: str = Field(default="")
    webhook_method: Literal["POST", "PUT"] = Field(default="POST")
    webhook_headers: dict[str, str] = Field(default_factory=dict)
    email_recipients: list[str] = Field(default_factory=list)
    email_sender: str = Field(default="errors@localhost")
    smtp_host: str = Field(default="")
    smtp_port: int = Field(default=587)
    smtp_username: str | None = Field(default=None)
    smtp_password: str | None = Field(default=None)
    smtp_use_tls: bool = Field(default=True)
    resend_api_key: str = Field(default="")
    notify_once_per_group: bool = Field(
        default=False,
        description="Alert each channel at most once per group per process",
    )

    # GitHub issue integration
    github_token: str = Field(
        default="",
        description="GitHub token for issue creation",
    )
    github_repo: str = Field(
        default="",
        description="GitHub repository for issue creation (owner/repo)",
    )
    github_labels: list[str] = Field(default_factory=list)

    # Logging configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Log level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log format",
    )

    # Run mode
    run_mode: Literal["daemon", "cli"] = Field(
        default="daemon",
        description="Run mode",
    )
    cleanup_interval_seconds: int = Field(
        default=3600,
        description="Interval between retention cleanup cycles",
    )

    @field_validator("backtrace_lines_limit", "apm_max_spans", "store_pool_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Ensure limits are positive."""
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("retention_days")
    @classmethod
    def validate_retention_days(cls, v: int | None) -> int | None:
        """Ensure retention is positive when set."""
        if v is not None and v <= 0:
            raise ValueError("retention_days must be positive or unset")
        return v

    @field_validator("apm_retention_days")
    @classmethod
    def validate_apm_retention_days(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("apm_retention_days must be positive")
        return v

    @field_validator("notification_cooldown_seconds")
    @classmethod
    def validate_cooldown(cls, v: int) -> int:
        """Ensure cooldown is non-negative."""
        if v < 0:
            raise ValueError("notification_cooldown_seconds must be non-negative")
        return v

    @field_validator("notify_on_threshold")
    @classmethod
    def validate_thresholds(cls, v: list[int]) -> list[int]:
        if any(n <= 0 for n in v):
            raise ValueError("notify_on_threshold values must be positive")
        return sorted(set(v))

    @field_validator("apm_sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: float) -> float:
        """Ensure sample rate is a fraction."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("apm_sample_rate must be between 0.0 and 1.0")
        return v

    @field_validator("cleanup_interval_seconds")
    @classmethod
    def validate_cleanup_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("cleanup_interval_seconds must be positive")
        return v

    @field_validator("smtp_port")
    @classmethod
    def validate_smtp_port(cls, v: int) -> int:
        """Ensure SMTP port is in valid range."""
        if v <= 0 or v > 65535:
            raise ValueError("smtp_port must be between 1 and 65535")
        return v

    @field_validator("github_repo")
    @classmethod
    def validate_github_repo(cls, v: str) -> str:
        if v and v.count("/") != 1:
            raise ValueError("github_repo must look like owner/name")
        return v

    def to_notification_rules(self) -> NotificationRules:
        return NotificationRules(
            on_first_occurrence=self.notify_on_first_occurrence,
            on_reopen=self.notify_on_reopen,
            on_threshold=tuple(self.notify_on_threshold),
            critical_exceptions=tuple(self.critical_exceptions),
            notify_in_environments=tuple(self.notify_in_environments),
        )

    def to_tracking_policy(self) -> TrackingPolicy:
        cooldown = (
            timedelta(seconds=self.notification_cooldown_seconds)
            if self.notification_cooldown_seconds
            else None
        )
        return TrackingPolicy(
            environment=self.environment,
            app_name=self.app_name,
            app_root=self.app_root,
            ignored_exceptions=tuple(self.ignored_exceptions),
            ignored_user_agents=tuple(self.ignored_user_agents),
            middleware_ignore_paths=tuple(self.middleware_ignore_paths),
            notification_cooldown=cooldown,
            rules=self.to_notification_rules(),
            backtrace_lines_limit=self.backtrace_lines_limit,
            retention_days=self.retention_days,
            filter_parameters=tuple(
                dict.fromkeys([*self.filter_parameters, *self.sanitize_fields])
            ),
        )

    def to_apm_policy(self) -> ApmPolicy:
        return ApmPolicy(
            enabled=self.apm_enabled,
            sample_rate=self.apm_sample_rate,
            retention_days=self.apm_retention_days,
            capture_spans=self.apm_capture_spans,
            max_spans=self.apm_max_spans,
            ignore_paths=tuple(self.apm_ignore_paths),
        )

    def variable_filter_patterns(self) -> tuple[str, ...]:
        """Deny list for captured locals: defaults plus configured fields."""
        return tuple(
            dict.fromkeys(
                [*DEFAULT_FILTER_PATTERNS, *self.filter_parameters, *self.sanitize_fields]
            )
        )


def load_settings(env_file: str | None = None) -> Settings:
    """Load application settings from environment.

    Args:
        env_file: Optional path to .env file. If not provided,
                 uses the default .env in the current directory.

    Returns:
        Validated Settings instance.

    Raises:
        ValidationError: If settings validation fails.
    """
    if env_file:
        return Settings(_env_file=env_file)  # type: ignore[call-arg]
    return Settings()


__all__ = ["Settings", "load_settings"]
