# runtime_agent/settings.py

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Runtime agent configuration from environment variables (AGENT_*)."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    host: str = "127.0.0.1"
    port: int = 9000

    # Containers
    stop_timeout: int = 10
    restart_policy: str = "unless-stopped"
    pull_images: bool = True

    # nginx
    nginx_binary: str = "nginx"
    nginx_config_path: str = "/etc/nginx/nginx.conf"

    # certbot / openssl
    certbot_binary: str = "certbot"
    openssl_binary: str = "openssl"
    letsencrypt_live_dir: str = "/etc/letsencrypt/live"

    command_timeout: int = 120


@lru_cache
def get_agent_settings() -> AgentSettings:
    return AgentSettings()
