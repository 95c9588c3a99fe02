#deployment_engine\config.py

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Engine configuration from environment variables (ENGINE_*)."""

    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Topology file
    topology_path: str = "project_config.yml"

    # Runtime agent on the host
    agent_url: str = "http://127.0.0.1:9000"
    agent_timeout: int = 30

    # Rollouts
    health_timeout_seconds: float = 120.0
    health_poll_interval: float = 2.0
    max_parallel: int = 4

    # Certificates
    renewal_interval_hours: float = 12.0
    renewal_threshold_days: int = 30
    acme_email: Optional[str] = None
    acme_staging: bool = False

    # "memory" keeps records for the lifetime of the process only
    storage: Literal["postgres", "memory"] = "postgres"

    log_level: str = "INFO"


@lru_cache
def get_engine_settings() -> EngineSettings:
    return EngineSettings()
