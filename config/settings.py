from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root: two levels up from this file (config/settings.py)
ROOT_DIR: Path = Path(__file__).resolve().parent.parent


class MatcherSettings(BaseSettings):
    """Descriptor matcher settings."""

    model_config = SettingsConfigDict(env_prefix="MATCHER_", extra="ignore")

    # Euclidean distance threshold (strictly below = match)
    threshold: float = Field(
        default=0.6,
        gt=0.0,
        description="Maximum Euclidean distance still counted as a match.",
    )
    # Default cap for all-matches search
    max_results: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Default number of candidates returned by the top-N search.",
    )


class WorkerPoolSettings(BaseSettings):
    """Matching worker pool settings."""

    model_config = SettingsConfigDict(env_prefix="POOL_", extra="ignore")

    enabled: bool = Field(
        default=True,
        description="Start the worker pool with the API. Disabled = direct matching only.",
    )
    size: int = Field(
        default=2,
        ge=1,
        le=64,
        description="Number of worker processes in the pool.",
    )
    match_timeout_ms: int = Field(
        default=5000,
        ge=1,
        description="Time bound for a single match task inside a worker.",
    )
    batch_item_timeout_ms: int = Field(
        default=3000,
        ge=1,
        description="Time bound for each item of a batch task.",
    )
    # Sleep between worker loop iterations; keeps idle workers off the CPU
    idle_delay_ms: int = Field(
        default=10,
        ge=1,
        description="Delay between iterations of the worker's cooperative loop.",
    )
    yield_every: int = Field(
        default=100,
        ge=1,
        description="Candidates compared between cooperative yields during a scan.",
    )
    shutdown_grace_s: float = Field(
        default=1.0,
        ge=0.0,
        description="Seconds to wait for workers to stop before terminating them.",
    )
    start_method: Literal["spawn", "forkserver", "fork"] = Field(
        default="spawn",
        description="multiprocessing start method used for worker processes.",
    )
    breaker_failures: int = Field(
        default=5,
        ge=1,
        description="Consecutive pool failures before direct matching is forced.",
    )
    breaker_recovery_s: float = Field(
        default=30.0,
        ge=0.0,
        description="Seconds before the pool is probed again after the breaker opens.",
    )

    @property
    def match_timeout_s(self) -> float:
        return self.match_timeout_ms / 1000.0

    @property
    def batch_item_timeout_s(self) -> float:
        return self.batch_item_timeout_ms / 1000.0

    @property
    def idle_delay_s(self) -> float:
        return self.idle_delay_ms / 1000.0


class APISettings(BaseSettings):
    """FastAPI server settings."""

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    host: str = Field(default="0.0.0.0", description="API server bind host.")
    port: int = Field(default=8000, ge=1, le=65535, description="API server port.")
    reload: bool = Field(default=False, description="Enable hot-reload (development only).")

    cors_origins: List[str] = Field(
        default=["http://localhost:5173", "http://127.0.0.1:5173"],
        description="Allowed CORS origins (include the web client origin).",
    )

    api_prefix: str = Field(default="/api/v1", description="URL prefix for all API routes.")

    max_batch_size: int = Field(
        default=256,
        ge=1,
        description="Maximum number of descriptors accepted by the batch endpoint.",
    )


class LoggingSettings(BaseSettings):
    """Logging settings (Loguru-based)."""

    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")

    level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level to emit.",
    )
    # Log file path (None = stdout only)
    file_path: Optional[Path] = Field(
        default=ROOT_DIR / "logs" / "facewatch.log",
        description="Path to log file. Set to null/empty to disable file logging.",
    )
    rotation: str = Field(
        default="10 MB",
        description="Loguru rotation threshold (e.g. '10 MB', '1 day').",
    )
    retention: str = Field(
        default="7 days",
        description="How long to retain rotated log files.",
    )
    json_logs: bool = Field(
        default=False,
        description="Emit logs as JSON objects (for log aggregation pipelines).",
    )


class Settings(BaseSettings):
    """
    Master settings object.

    Priority (highest → lowest):
      1. Environment variables  (e.g. POOL_SIZE=4)
      2. .env file              (loaded from project root)
      3. Default values below
    """

    model_config = SettingsConfigDict(
        env_file=str(ROOT_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    app_name: str = Field(default="Face Watch Matching Service", description="Application name.")
    app_version: str = Field(default="1.0.0", description="Application version string.")
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment.",
    )

    matcher: MatcherSettings = Field(default_factory=MatcherSettings)
    pool: WorkerPoolSettings = Field(default_factory=WorkerPoolSettings)
    api: APISettings = Field(default_factory=APISettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


settings = Settings()
