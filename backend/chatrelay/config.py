"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "ChatRelay"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./chatrelay.db"

    # Redis (empty = keep submission guard state in process memory)
    redis_url: str = ""

    # OpenAI (automated responder)
    openai_api_key: str = ""
    responder_model: str = "gpt-4.1-mini"
    responder_instructions: str = (
        "You are a friendly customer support agent. "
        "Answer briefly and politely in the language of the visitor."
    )
    responder_timeout_seconds: float = 30.0
    responder_history_size: int = 6

    # CORS
    frontend_url: str = "http://localhost:5173"

    # Message intake
    max_message_length: int = 500
    duplicate_window_seconds: float = 5.0
    inflight_guard_ttl_seconds: float = 30.0

    # Active conversation views
    user_preview_length: int = 50
    admin_preview_length: int = 40
    registry_max_views: int = 0  # 0 = never evict

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
