"""
Application configuration using pydantic-settings.

All secrets and configuration are loaded from environment variables.
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Flask settings
    flask_env: str = Field(default="production", description="Flask environment")
    secret_key: str = Field(default="dev-secret-key-change-in-production", description="Flask secret key")
    debug: bool = Field(default=False, description="Debug mode")

    # Database settings
    database_url: str = Field(..., description="PostgreSQL connection URL")

    # Operator API
    master_api_key: str = Field(..., description="Master API key for the admin endpoints")

    # Encryption
    fernet_key: str = Field(..., description="Fernet encryption key (32 url-safe base64 bytes)")

    # Object storage for video assets
    storage_url: Optional[str] = Field(default=None, description="Base URL of the storage REST API")
    storage_service_key: Optional[str] = Field(default=None, description="Service key for the storage REST API")
    video_bucket: str = Field(default="videos", description="Bucket holding uploaded videos")
    signed_url_ttl: int = Field(default=3600, description="Lifetime of signed video URLs in seconds")

    # Widget runtime
    event_max_attempts: int = Field(default=3, description="Delivery attempts per widget event before dropping it")

    @field_validator("flask_env")
    @classmethod
    def validate_flask_env(cls, v: str) -> str:
        """Validate Flask environment."""
        if v not in ["development", "production", "testing"]:
            raise ValueError("flask_env must be development, production, or testing")
        return v

    @field_validator("fernet_key")
    @classmethod
    def validate_fernet_key(cls, v: str) -> str:
        """Validate Fernet key format."""
        try:
            from cryptography.fernet import Fernet
            Fernet(v.encode())
        except Exception as e:
            raise ValueError(f"Invalid Fernet key format: {e}")
        return v

    @field_validator("signed_url_ttl", "event_max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.flask_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.flask_env == "production"

    def get_database_url(self) -> str:
        """Get the database URL for SQLAlchemy."""
        return self.database_url


# Global settings instance
settings = Settings()
