# tripod/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Database
    expected_schema_version: str = "002_billing.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "tripod"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Security
    admin_token: str | None = None  # Bearer token required on every /api and /admin route
    allowed_origins: list[str] = ["*"]

    # Job Worker (DB-backed queue)
    job_worker_enabled: bool = False          # Master switch; when off, auto-assignment runs inline
    job_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    job_worker_batch_size: int = 5            # Jobs claimed per poll cycle
    job_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    job_worker_stale_timeout: int = 300       # Reset jobs stuck 'running' for this long (seconds)
    job_cleanup_completed_ttl_days: int = 7   # Delete completed jobs older than N days
    job_cleanup_failed_ttl_days: int = 30     # Delete failed jobs older than N days

    # Automatic assignment
    automation_enabled: bool = True
    automation_timezone: str = "UTC"              # Day boundary for daily capacity counting
    internal_vendor_profile_id: str | None = None  # In-house vendor, exempt from pricing agreement checks

    # Notifications
    operator_webhook_url: str | None = None  # Optional JSON webhook mirrored for every in-app notification
    operator_webhook_secret: str | None = None

    # Payments (charges, refunds)
    stripe_secret_key: str | None = None
    stripe_api_base: str = "https://api.stripe.com"
    stripe_currency: str = "usd"

    # Monitoring
    enable_metrics: bool = True

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def payments_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("admin_token", self.admin_token),
            ("database_url", self.database_url),
        ]

        return [field_name for field_name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Admin / Security ---
    if not s.admin_token:
        warnings.append("admin_token is missing (every /api route will answer 503).")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    # --- Worker ---
    if s.run_mode == "worker" and not s.job_worker_enabled:
        warnings.append("run_mode=worker but job_worker_enabled=False (the process will idle).")

    # --- Automation ---
    if s.automation_enabled and not s.internal_vendor_profile_id:
        warnings.append(
            "internal_vendor_profile_id is not set: only vendors with a pricing agreement can be auto-assigned."
        )

    # --- Payments ---
    if not s.payments_enabled:
        warnings.append("stripe_secret_key is not set: pay-as-you-go charges stay pending and only manual refunds complete.")

    if s.operator_webhook_url and not s.operator_webhook_secret:
        warnings.append("operator_webhook_url is set without operator_webhook_secret (webhook calls are unsigned).")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
