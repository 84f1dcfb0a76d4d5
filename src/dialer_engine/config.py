"""Application configuration."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseModel):
    """Primary operational store (scores, conversions, audit)."""

    url: str = "sqlite+aiosqlite:///data/dialer_engine.db"
    echo: bool = False

    # Upper bound for one transition's transaction, in seconds
    store_timeout_seconds: float = 10.0


class ReplicaSettings(BaseModel):
    """Read-only ground-truth replica (users, claims, requirements)."""

    url: str = "sqlite+aiosqlite:///data/replica.db"
    echo: bool = False
    read_timeout_seconds: float = 5.0

    # Circuit breaker protecting the replica
    failure_threshold: int = 5
    reset_timeout_seconds: float = 30.0


class ConversionSettings(BaseModel):
    """Conversion ledger configuration."""

    dedup_window_minutes: int = 60

    # Leak monitor: how close a conversion must be to an audit row to count as captured
    leak_match_tolerance_minutes: int = 5
    leak_lookback_minutes: int = 60


class ScoringSettings(BaseModel):
    """Priority scoring policy overrides.

    Keys are outcome type values (e.g. "no_answer").
    """

    delta_overrides: dict[str, int] = {}
    delay_overrides_minutes: dict[str, int] = {}

    # One-off aging penalty for rows older than aging_after_days
    aging_delta: int = 5
    aging_after_days: int = 7


class EligibilitySettings(BaseModel):
    """Requirement exclusion policy shared by eligibility and discovery."""

    excluded_requirement_types: list[str] = [
        "signature",
        "vehicle_registration",
        "cfa",
        "solicitor_letter_of_authority",
        "letter_of_authority",
    ]

    # Type -> reasons that make an otherwise valid requirement non-actionable
    excluded_type_reasons: dict[str, list[str]] = {
        "id_document": ["base requirement for claim."],
    }

    pending_statuses: list[str] = ["PENDING"]


class JobSettings(BaseModel):
    """Discovery / backfill job limits."""

    default_batch_size: int = 500
    max_batch_size: int = 2000

    # Serverless executions are killed at 5 minutes, leave headroom
    time_budget_seconds: float = 240.0

    max_concurrency: int = 1
    new_users_lookback_hours: int = 24


class ApiSettings(BaseModel):
    """Shared secrets for the operator and cron entry points."""

    admin_token: str = ""
    cron_secret: str = ""


class Settings(BaseSettings):
    """Application settings.

    Loaded from:
    1. Environment variables (DIALER_*)
    2. configs/{environment}.yaml
    3. configs/default.yaml
    """

    model_config = SettingsConfigDict(
        env_prefix="DIALER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    service_name: str = "dialer-engine"

    # Environment
    environment: str = "development"
    debug: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Subsystems
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    replica: ReplicaSettings = Field(default_factory=ReplicaSettings)
    conversions: ConversionSettings = Field(default_factory=ConversionSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    eligibility: EligibilitySettings = Field(default_factory=EligibilitySettings)
    jobs: JobSettings = Field(default_factory=JobSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings object loaded from config files and environment.
    """
    import os
    from dynaconf import Dynaconf

    # Determine paths
    config_dir = Path(os.getenv("DIALER_CONFIG_DIR", "configs"))
    env = os.getenv("DIALER_ENV", "development")

    # Build settings file list
    settings_files = []
    if (config_dir / "default.yaml").exists():
        settings_files.append(str(config_dir / "default.yaml"))
    if (config_dir / f"{env}.yaml").exists():
        settings_files.append(str(config_dir / f"{env}.yaml"))

    # Load with Dynaconf
    dynaconf = Dynaconf(
        envvar_prefix="DIALER",
        settings_files=settings_files,
        load_dotenv=True,
    )

    # Convert to dict
    config_dict: dict[str, Any] = {}
    for key in dynaconf.keys():
        if not key.startswith("_"):
            config_dict[key.lower()] = dynaconf[key]

    config_dict["environment"] = env

    return Settings(**config_dict)


def validate_production_settings(settings: Settings) -> list[str]:
    """Validate settings for production readiness.

    Args:
        settings: Application settings to validate.

    Returns:
        List of validation error messages (empty if all valid).
    """
    errors: list[str] = []

    if settings.environment not in ("production", "staging", "prod"):
        return errors

    if not settings.api.admin_token:
        errors.append("DIALER_API__ADMIN_TOKEN must be set in production")

    if not settings.api.cron_secret:
        errors.append("DIALER_API__CRON_SECRET must be set in production")

    if "sqlite" in settings.database.url:
        errors.append("DIALER_DATABASE__URL must point at a server database in production")

    if settings.conversions.dedup_window_minutes <= 0:
        errors.append("conversions.dedup_window_minutes must be positive")

    return errors
