from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # API Keys
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None

    # Endpoints
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    anthropic_version: str = "2023-06-01"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    user_agent: str = "conduit/0.1"

    # Local inference (Ollama)
    ollama_host: str = "http://localhost:11434"
    local_default_model: str = "gemma3:2b"

    # Data
    data_dir: str = "./data"
    database_url: Optional[str] = None  # Falls back to sqlite under data_dir

    # Timeouts (seconds)
    openai_timeout_seconds: float = 60.0
    anthropic_timeout_seconds: float = 60.0
    gemini_timeout_seconds: float = 60.0
    local_timeout_seconds: float = 120.0

    # Resilience
    max_attempts: int = 5
    base_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0
    circuit_failure_threshold: int = 3
    circuit_cooldown_seconds: float = 30.0

    # Minimum spacing between request starts, per provider
    openai_min_interval_seconds: float = 0.1
    anthropic_min_interval_seconds: float = 0.2
    gemini_min_interval_seconds: float = 0.1
    local_min_interval_seconds: float = 0.0

    # Conversation
    history_window: int = 10
    max_context_chars: int = 8000
    max_history_messages: int = 1000
    max_history_tokens: int = 32_000

    # Logging
    log_level: str = "INFO"
    log_json: bool = True  # False renders human-readable console output

    model_config = {"env_file": ".env", "extra": "ignore"}

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.data_dir}/conduit.db"


settings = Settings()
