from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = "sqlite:///./scriptflow.db"
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "default"

    # webhooks da automação externa, um por etapa
    transcript_analysis_webhook_url: str | None = None
    research_webhook_url: str | None = None
    outline_generation_webhook_url: str | None = None
    webhook_timeout_seconds: float = 720.0

    poll_interval_seconds: float = 3.0
    poll_ceiling_seconds: float = 300.0

    prompt_max_chars: int = 50_000

    openrouter_models_url: str = "https://openrouter.ai/api/v1/models"
    log_level: str = "INFO"

    api_host: str = "0.0.0.0"
    api_port: int = 8000


settings = Settings()
