from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # `.env.prod` takes priority over `.env`
        env_file=(".env", ".env.prod"),
        extra="ignore",
    )

    # Text-generation endpoint (Gemini through its OpenAI-compatible API)
    gemini_api_key: Optional[str] = None
    ai_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    ai_model: str = "gemini-2.0-flash"
    ai_temperature: float = 0.7
    ai_top_p: float = 1.0
    ai_max_output_tokens: int = 2048
    ai_timeout_seconds: float = 60.0
    ai_max_retries: int = 1
    ai_safety_filtering: bool = True

    # Input validation / persistence limits
    min_job_description_length: int = 50
    history_limit: int = 10

    # Logging & metrics
    log_level: str = "INFO"
    log_format: str = "json"
    metrics_environment: str = "Local"
    metrics_namespace: str = "InterviewCoach"

    app_base_url: str = "http://localhost:8000"  # Default for local dev


@lru_cache()
def get_settings() -> Settings:
    return Settings()
