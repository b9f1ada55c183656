"""Application settings loaded from environment variables."""

import os

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Registry configuration. All values come from environment variables."""

    # Log backend: "kafka" or "memory" (local dev, nothing survives a restart)
    log_backend: str = Field(default="kafka")

    # Kafka
    log_bootstrap_servers: str = Field(default="localhost:9092")
    log_security_protocol: str = Field(default="PLAINTEXT")
    log_sasl_mechanism: str = Field(default="PLAIN")
    log_sasl_username: str = Field(default="")
    log_sasl_password: str = Field(default="")
    log_send_timeout_seconds: float = Field(default=30.0)

    # Registry topic (the compacted "table")
    db_name: str = Field(default="function-registry")

    # Replay supervisor
    replay_initial_backoff_seconds: float = Field(default=0.5)
    replay_max_backoff_seconds: float = Field(default=30.0)
    replay_alert_after_failures: int = Field(default=10)

    # REST server
    http_host: str = Field(default="0.0.0.0")
    http_port: int = Field(default=8080)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_bootstrap_servers(self) -> list[str]:
        """Parse LOG_BOOTSTRAP_SERVERS into a list of host:port entries."""
        if not self.log_bootstrap_servers.strip():
            return []
        return [s.strip() for s in self.log_bootstrap_servers.split(",") if s.strip()]


settings = Settings()
