"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "crm_automation_dev"

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"

    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"

    # Scheduler
    scheduler_enabled: bool = True
    drip_poll_interval_seconds: int = 30
    drip_batch_size: int = 100
    drip_worker_concurrency: int = 10
    drip_lease_seconds: int = 120  # How long a worker holds a claimed run
    drip_retry_delay_seconds: int = 300  # Backoff before a failed step is retried
    flow_resume_interval_seconds: int = 30
    flow_resume_batch_size: int = 100

    # Engine limits
    flow_max_steps_per_walk: int = 500  # Guards against goto cycles
    trigger_max_delay_ms: int = 60000

    # Outbound integrations
    action_webhook_url: Optional[str] = None
    message_gateway_url: Optional[str] = None
    http_timeout_seconds: float = 15.0

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


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
