"""
Application settings and configuration management.
"""
from typing import List
from pydantic_settings import BaseSettings
from pydantic import field_validator


DEFAULT_JWT_SECRET = "dev-jwt-secret-change-this-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./bidpeek.db"
    store_timeout_seconds: int = 5

    # JWT Configuration (tokens issued by the auth provider)
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""

    # Payment provider webhooks
    stripe_webhook_secret: str = ""
    webhook_signature_tolerance_seconds: int = 300

    # Identity
    device_id_max_length: int = 128

    # Application Settings
    environment: str = "development"
    app_version: str = "1.0.0"
    release_version: str = "v1.0.0"

    # CORS Settings
    allowed_origins: str = "http://localhost:3000,http://localhost:8081,http://localhost:19006"

    # Logging
    log_level: str = "INFO"

    # Monitoring & Observability
    enable_metrics: bool = True
    sentry_dsn: str = ""
    sentry_traces_sample_rate: float = 0.1

    # Rate Limiting
    enable_rate_limiting: bool = True
    rate_limit_storage_uri: str = "memory://"
    check_scan_rate_limit: str = "120/minute"
    record_scan_rate_limit: str = "120/minute"

    @field_validator("allowed_origins")
    def validate_origins(cls, v):
        """Convert comma-separated origins string to list."""
        if isinstance(v, list):
            return v
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    @field_validator("log_level")
    def validate_log_level(cls, v):
        """Normalise log level names."""
        return v.upper()

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def uses_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def validate_production_config(self) -> List[str]:
        """Validate production configuration and return list of issues."""
        issues = []

        if self.is_production:
            if self.jwt_secret == DEFAULT_JWT_SECRET:
                issues.append("JWT secret must be changed from default value")

            if len(self.jwt_secret) < 32:
                issues.append("JWT secret should be at least 32 characters long")

            if not self.stripe_webhook_secret:
                issues.append("Stripe webhook signing secret is not configured")

            if self.uses_sqlite:
                issues.append("SQLite should not be used as the production store")

            if any("localhost" in origin for origin in self.allowed_origins):
                issues.append("Localhost origins should be removed in production")

        return issues

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
