from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # ─────────── APP ───────────
    app_name: str = "Contract Signature & Escrow Lifecycle"
    environment: str = "dev"
    log_level: str = "INFO"

    # ─────────── API ───────────
    api_prefix: str = "/api/v1"
    request_id_header: str = "X-Request-Id"

    # ─────────── DATABASE ───────────
    database_url: str = "sqlite:///./estate_contracts.db"

    # ─────────── JWT / AUTH ───────────
    jwt_secret_key: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    jwt_access_token_minutes: int = 1440  # 24 hours

    # ─────────── CONTRACTS ───────────
    contract_reference_prefix: str = "IMMOG"
    retraction_hours: int = 48
    retraction_reminder_hours: int = 6

    # ─────────── ESCROW ───────────
    escrow_hold_hours: int = 48

    # ─────────── CONCURRENCY ───────────
    cas_max_retries: int = 3

    # ─────────── SWEEPS / SCHEDULER ───────────
    scheduler_enabled: bool = False
    sweep_interval_minutes: int = 15
    sweep_batch_size: int = 500
    sweep_batch_budget_seconds: float = 60.0

    # ─────────── NOTIFICATIONS ───────────
    notification_max_attempts: int = 5
    notification_batch_size: int = 100
    notification_claim_seconds: int = 300


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
