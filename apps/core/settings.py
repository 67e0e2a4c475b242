"""
Application settings and configuration management.
"""
from typing import List
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./subscriptions.db"

    # JWT Configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Redis Configuration (Celery broker and result backend)
    redis_url: str = "redis://localhost:6379"

    # Payment gateway (Paystack)
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    gateway_timeout_seconds: float = 15.0
    currency: str = "NGN"

    # Public URLs handed to the gateway
    frontend_url: str = "http://localhost:3000"
    base_url: str = "http://localhost:8000"

    # Delivery scheduling
    max_deliveries_per_run: int = 100
    sweep_hour_utc: int = 5

    # Webhook processing
    webhook_max_attempts: int = 5
    webhook_processing_lease_seconds: int = 600
    webhook_retry_delays: str = Field(default="60,300,1800,7200", validate_default=True)  # 1m, 5m, 30m, 2h

    # Application Settings
    environment: str = "development"
    app_version: str = "1.0.0"

    # Logging
    log_level: str = "INFO"

    # Monitoring & Observability
    sentry_dsn: str = ""
    sentry_traces_sample_rate: float = 0.1
    enable_metrics: bool = True

    @field_validator("webhook_retry_delays")
    def validate_webhook_delays(cls, v):
        """Convert comma-separated delay string to list of integers."""
        if not v:
            return [60, 300, 1800, 7200]
        if isinstance(v, list):
            return v
        return [int(delay.strip()) for delay in v.split(",")]

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def payment_callback_url(self) -> str:
        return f"{self.frontend_url}/subscriptions/verify"

    @property
    def payment_webhook_url(self) -> str:
        return f"{self.base_url}/api/v1/webhooks/paystack"

    def validate_production_config(self) -> List[str]:
        """Validate production configuration and return list of issues."""
        issues = []

        if self.is_production:
            if not self.paystack_secret_key:
                issues.append("Paystack secret key must be configured in production")

            if self.jwt_secret == "change-me-in-production":
                issues.append("JWT secret must be changed from default value")

            if self.database_url.startswith("sqlite"):
                issues.append("SQLite should not be used in production")

        return issues

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
