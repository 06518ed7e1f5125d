from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROTATION_LOCK_BACKENDS = {"local", "database"}


class Settings(BaseSettings):
    app_name: str = Field(default="Hosted Control Plane")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")

    database_url: str = Field(default="sqlite+aiosqlite:///data/controlplane.db")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="data/controlplane.log")
    log_db_queries: bool = Field(default=False)
    log_db_query_params: bool = Field(default=False)
    log_sql_max_length: int = Field(default=400)
    log_slow_query_ms: float = Field(default=200.0)

    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8000)

    database_auto_create: bool = Field(default=True)

    rotations_file: str = Field(default="config/rotations.yaml")
    rotation_lock_backend: str = Field(default="database")
    # 0 waits forever.
    rotation_lock_timeout_seconds: float = Field(default=0.0)
    rotation_lock_lease_seconds: int = Field(default=300)
    rotation_lock_poll_seconds: float = Field(default=0.2)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        if not self.database_url:
            raise ValueError("DATABASE_URL must be set in .env or environment variables.")
        issues: list[str] = []
        backend = self.rotation_lock_backend.strip().lower()
        if backend not in ROTATION_LOCK_BACKENDS:
            issues.append(
                "ROTATION_LOCK_BACKEND must be one of: "
                + ", ".join(sorted(ROTATION_LOCK_BACKENDS))
                + "."
            )
        if self.rotation_lock_timeout_seconds < 0:
            issues.append("ROTATION_LOCK_TIMEOUT_SECONDS must not be negative.")
        if self.rotation_lock_lease_seconds <= 0:
            issues.append("ROTATION_LOCK_LEASE_SECONDS must be positive.")
        if self.rotation_lock_poll_seconds <= 0:
            issues.append("ROTATION_LOCK_POLL_SECONDS must be positive.")
        if issues:
            raise ValueError(" ".join(issues))
        self.rotation_lock_backend = backend
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
