"""Configuration settings for the application."""

from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
)


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = False
    DATA_DIR: str = "./data"
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # LLM Configuration
    MODEL_PROVIDER: str = "openai"  # Options: openai, anthropic, tgi
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o"
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"
    TGI_ENDPOINT: str = "http://tgi:8080/v1/chat/completions"
    MODEL_TEMPERATURE: float = 0.0
    MODEL_MAX_TOKENS: int = 1024
    MODEL_TIMEOUT: float = 60.0

    # Conversation handling
    HISTORY_WINDOW: int = 20  # Most recent history messages sent with each turn

    # Context persistence
    CONTEXT_STORE: str = "memory"  # Options: memory, json


settings = Settings()
