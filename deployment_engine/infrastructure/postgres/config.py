#deployment_engine\infrastructure\postgres\config.py

from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """
    Record storage for rollouts, revisions and certificates.

    Either ENGINE_DATABASE_URL or the full set of POSTGRES_* variables must
    be given; the URL wins when both are present.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    engine_database_url: Optional[str] = None

    postgres_user: Optional[str] = None
    postgres_password: Optional[str] = None
    postgres_host: Optional[str] = None
    postgres_port: int = 5432
    postgres_db: Optional[str] = None

    # Connection pool (engine process and certificate worker)
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 3600

    echo_sql: bool = False

    @model_validator(mode="after")
    def _require_location(self) -> "DatabaseSettings":
        if self.engine_database_url:
            return self
        missing = [
            name for name in ("postgres_user", "postgres_password", "postgres_host", "postgres_db")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(
                f"database not configured: set ENGINE_DATABASE_URL or {', '.join(m.upper() for m in missing)}"
            )
        return self

    @property
    def database_url(self) -> str:
        if self.engine_database_url:
            return self.engine_database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_database_settings(env_file: Optional[str] = None) -> DatabaseSettings:
    """Load settings once; nothing touches the environment at import time."""
    if env_file:
        return DatabaseSettings(_env_file=env_file)
    return DatabaseSettings()
