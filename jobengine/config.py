"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Job store backend: "memory" (local dev) or "supabase"
    storage_backend: str = "memory"

    # AI gateway (OpenAI-compatible chat completions endpoint)
    ai_gateway_url: str = "https://ai.gateway.lovable.dev/v1/chat/completions"
    ai_gateway_key: Optional[str] = None
    classifier_model: str = "google/gemini-2.5-flash"
    generation_model: str = "google/gemini-2.5-flash-image-preview"
    classifier_timeout_seconds: float = 60.0

    # Invocation budget (the platform kills an invocation at ~60-90s)
    invocation_ceiling_seconds: float = 50.0

    # Batch processing
    batch_concurrency: int = 3
    inter_batch_delay_seconds: float = 0.5

    # Retry / backoff
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_jitter_seconds: float = 0.0
    max_item_retries: int = 3
    stale_item_seconds: int = 120

    # Dispatcher
    max_concurrent_jobs: int = 2

    # Auto-resume watchdog
    watchdog_enabled: bool = True
    watchdog_interval_seconds: float = 30.0

    # Page fetching (scrape jobs)
    scrape_timeout_seconds: float = 20.0

    log_level: str = "INFO"
    api_port: int = 8000

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
