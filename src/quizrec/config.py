"""Configuration management for the quiz recommendation client."""

from __future__ import annotations

from typing import Literal

from common.config import Settings as BaseSettings


class Settings(BaseSettings):
    """Quiz recommendation configuration.

    Inherits provider keys and logging settings from
    ``common.config.Settings`` and adds the collection, ranking and
    backend options.
    """

    # Service identity
    service_name: str = "quizrec"
    service_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8030

    # External services
    api_base_url: str = "http://localhost:3001/api"
    commerce_api_url: str = "http://localhost:3002"
    commerce_api_token: str = ""

    # Collection
    search_page_size: int = 10
    search_page_cap: int = 1
    recommended_page_size: int = 6
    recommended_page_cap: int = 1
    fetch_stall_timeout: float = 6.0
    fetch_poll_interval: float = 0.05

    # Ranking
    ranking_policy: Literal["backend", "llm", "passthrough"] = "backend"
    ranking_limit: int = 20
    ranking_page_size: int = 20
    past_days: int = 5
    vision_enabled: bool = True

    # LLM configuration
    default_model: str = "gpt-4o-mini"
    anthropic_model: str = "claude-sonnet-4-20250514"


def get_settings() -> Settings:
    """Return a settings instance read from the environment."""
    return Settings()
