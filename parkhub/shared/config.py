"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all services."""

    # Service info
    service_name: str = "parkhub-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "parkhub"
    database_url_override: Optional[str] = None  # e.g. sqlite+aiosqlite:///./parkhub.db

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672

    # Logging
    log_level: str = "INFO"

    # Payment provider
    stripe_secret_key: str = "sk_test_placeholder"
    stripe_webhook_secret: str = "whsec_placeholder"
    webhook_tolerance_seconds: int = 300

    # Reservation lifecycle
    payment_grace_period_minutes: int = 30
    sweeper_interval_seconds: int = 60
    sweeper_batch_size: int = 100
    max_reservation_hours: int = 720

    # Outbox
    outbox_poll_interval: int = 1
    outbox_batch_size: int = 100

    # Search
    search_default_radius_km: float = 5.0
    search_max_radius_km: float = 50.0
    search_default_limit: int = 20

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    class Config:
        env_file = ".env"
        case_sensitive = False
