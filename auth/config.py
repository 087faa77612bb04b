"""Authentication configuration."""

from pydantic import BaseModel, Field


class AuthConfig(BaseModel):
    """
    Authentication configuration.

    All durations are in their natural units (minutes for short-lived
    credentials, hours or days for longer ones) to make configuration
    intuitive. Secrets are not configured here; they come from Vault.
    """

    # Sessions
    session_ttl_days: int = Field(
        default=30,
        description="Fixed session lifetime. Activity does not extend it",
        ge=1,
        le=90,
    )
    session_purge_after_days: int = Field(
        default=30,
        description="Delete session rows this long after they expired",
        ge=1,
    )
    session_sweep_interval_hours: int = Field(
        default=6,
        description="How often the expiry sweep runs",
        ge=1,
        le=168,
    )
    session_cookie_name: str = Field(default="session_token")
    session_cookie_secure: bool = Field(
        default=True,
        description="Send the session cookie over HTTPS only",
    )

    # Security log
    security_log_retention_days: int = Field(
        default=90,
        description="Security events older than this are archived and deleted",
        ge=1,
    )
    security_log_rotation_interval_hours: int = Field(default=24, ge=1, le=168)
    security_log_archive_path: str = Field(
        default="logs/security_events.jsonl",
        description="JSON lines file rotated security events are appended to",
    )

    # Two-factor login
    two_factor_ticket_ttl_minutes: int = Field(
        default=10,
        description="How long a password-verified login waits for its second factor",
        ge=1,
        le=30,
    )
    two_factor_max_failed_attempts: int = Field(
        default=3,
        description="Failed codes per ticket before the ticket is locked out",
        ge=1,
        le=20,
    )
    two_factor_max_failed_attempts_per_user: int = Field(
        default=10,
        description="Failed codes across all of a user's tickets before second-factor login is locked out",
        ge=1,
        le=100,
    )
    two_factor_lockout_minutes: int = Field(
        default=15,
        description="Lockout window for a ticket or user that hit a failure limit",
        ge=1,
        le=1440,
    )
    totp_issuer: str = Field(default="OGC NewFinity")
    totp_valid_window: int = Field(
        default=1,
        description="Accepted TOTP steps either side of now",
        ge=0,
        le=2,
    )
    recovery_code_count: int = Field(default=10, ge=4, le=20)

    # One-time tokens
    activation_token_expiry_hours: int = Field(default=24, ge=1, le=168)
    password_reset_expiry_minutes: int = Field(
        default=30,
        description="How long password reset links remain valid",
        ge=15,
        le=120,
    )
    oauth_ticket_ttl_minutes: int = Field(default=10, ge=1, le=30)

    # Rate limiting
    login_rate_limit_attempts: int = Field(
        default=10,
        description="Max login attempts per email per window",
        ge=1,
        le=100,
    )
    login_rate_limit_window_minutes: int = Field(default=15, ge=1, le=60)
    password_reset_rate_limit_attempts: int = Field(
        default=3,
        description="Max reset emails per address per window",
        ge=1,
        le=20,
    )
    password_reset_rate_limit_window_minutes: int = Field(default=15, ge=5, le=60)

    # Application
    app_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL for activation and reset links",
    )
    app_name: str = Field(default="OGC NewFinity")
    terms_version: str = Field(default="v1.0")
