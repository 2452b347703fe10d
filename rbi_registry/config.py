"""RBI Registry — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class RegistrySettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── PostgreSQL (registry database) ─────────────────────────
    postgres_user: str = "rbi"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "rbi_registry"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url: str = ""

    @property
    def database_url_sync(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── Identity provider ──────────────────────────────────────
    identity_provider_url: str = "http://localhost:54321"
    identity_service_key: str = ""
    identity_timeout_seconds: float = 10.0

    # ── Provisioning ───────────────────────────────────────────
    visibility_max_attempts: int = 6
    visibility_initial_delay: float = 0.5
    visibility_backoff_multiplier: float = 2.0
    visibility_max_delay: float = 4.0
    visibility_max_total_wait: float = 15.0
    provisioning_max_redrives: int = 5
    redrive_base_delay_seconds: float = 30.0
    default_role_name: str = "barangay_user"

    # ── Hierarchy reconciliation ───────────────────────────────
    reconcile_batch_size: int = 500
    prune_empty_regions: bool = True

    # ── Worker ─────────────────────────────────────────────────
    sweep_interval_seconds: int = 60

    # ── API ────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    webhook_secret: str = "change-me-generate-a-random-secret"

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = RegistrySettings()
