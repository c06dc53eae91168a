"""
Application settings and configuration.
All secrets are loaded from environment variables.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Twilio Configuration
    twilio_account_sid: str
    twilio_auth_token: str
    twilio_whatsapp_number: str  # Format: whatsapp:+14155238886

    # OpenAI Configuration
    openai_api_key: str
    openai_model: str = "gpt-4o-mini"
    openai_transcription_model: str = "whisper-1"

    # Bot identity
    bot_name: str = "Amélie"
    bot_id: str = ""  # The bot's own chat id, used for mentions and replies in groups
    command_prefix: str = "."

    # Database - Use DATA_DIR for Railway persistent volume
    data_dir: str = "."
    temp_dir: str = "./temp"

    @property
    def database_url(self) -> str:
        """Database URL with support for Railway persistent volumes."""
        return f"sqlite+aiosqlite:///{self.data_dir}/relay.db"

    # Circuit breaker around the AI backend
    breaker_failure_threshold: int = 5
    breaker_reset_seconds: float = 60.0

    # Transactions
    transaction_max_attempts: int = 3
    transaction_retention_days: int = 7
    recovery_startup_delay_seconds: int = 10
    recovery_interval_seconds: int = 120

    # Deduplication window
    dedup_retention_minutes: int = 15

    # Media
    max_media_mb: int = 20
    sync_image_max_bytes: int = 0  # 0 sends every image through the queue
    image_job_timeout_seconds: float = 120.0
    video_job_timeout_seconds: float = 300.0

    # Application Settings
    debug: bool = False
    validate_twilio_signature: bool = True

    @property
    def max_media_bytes(self) -> int:
        return self.max_media_mb * 1024 * 1024

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
