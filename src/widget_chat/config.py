"""Runtime configuration for the chat widget core."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class WidgetSettings(BaseSettings):
    """Settings read from ``WIDGET_CHAT_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="WIDGET_CHAT_")

    api_url: str = "http://127.0.0.1:8000"
    request_timeout: float = 30.0
    # Bound for a single directory call made by the engine or bootstrap.
    # None leaves calls unbounded.
    operation_timeout: Optional[float] = None

    initial_page_size: int = 50
    older_page_size: int = 20
    conversation_page_size: int = 10

    engine: str = "gemini"
    visitor_storage_key: str = "visitor_uuid"
    thinking_text: str = "AI is thinking..."
    # Append troubleshooting tips to AI, network and timeout error messages.
    error_tips: bool = False


@lru_cache()
def get_settings() -> WidgetSettings:
    """Returns the process-wide settings instance"""
    return WidgetSettings()
