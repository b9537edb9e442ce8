"""Centralized configuration management using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings shared by the service and its HTTP clients."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # LLM providers (ranking policy "llm")
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # Outbound HTTP
    request_timeout: float = 15.0
    max_retries: int = 2

    # Application
    log_level: str = "INFO"
    environment: str = "development"

    @property
    def json_logs(self) -> bool:
        return self.environment == "production"
