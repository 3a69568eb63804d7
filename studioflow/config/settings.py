"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage
    storage_backend: str = "mongo"  # "mongo" or "memory"
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "studioflow_dev"

    # Email transport (SendGrid)
    sendgrid_api_key: str = ""
    sendgrid_base_url: str = "https://api.sendgrid.com/v3"
    sendgrid_from_email: str = "no-reply@studioflow.app"
    sendgrid_reply_to: str = ""

    # SMS transport (Twilio)
    twilio_account_sid: str = ""
    twilio_api_key: str = ""
    twilio_api_key_secret: str = ""
    twilio_from_number: str = ""
    twilio_base_url: str = "https://api.twilio.com/2010-04-01"

    transport_timeout_seconds: float = 15.0

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"

    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"

    # Public URL used when building smart file links
    public_base_url: str = "http://localhost:3000"

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 60
    claim_lease_seconds: int = 300  # How long an in-flight execution claim blocks other instances
    due_item_batch_size: int = 200

    # Automation timing defaults (tenant settings override these)
    default_timezone: str = "UTC"
    default_send_hour: int = 9
    default_send_minute: int = 0
    countdown_grace_days: int = 0  # 0 = countdowns only fire on their target day

    # FIRE_ALL keeps global + stage-specific matches, PREFER_STAGE_SPECIFIC drops globals
    global_match_policy: str = "FIRE_ALL"
    max_stage_cascade_depth: int = 3

    # Environment
    environment: str = "development"
    debug: bool = True

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"

    @property
    def uses_memory_storage(self) -> bool:
        """True when repositories are backed by the in-process store"""
        return self.storage_backend.lower() == "memory"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
