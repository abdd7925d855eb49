"""
Configuration and settings for the intake backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    app_name: str = Field(default="Repack Intake Backend")
    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Database (any SQLAlchemy URL; Postgres expected in production)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Queue (Redis) for OCR jobs
    redis_url: Optional[str] = Field(default=None)
    redis_queue_key: str = Field(default="repack:ocr-jobs")

    # Storage provider selected as default at startup
    storage_provider: str = Field(default="local")

    # Local disk storage, served under {base_url}/uploads
    local_upload_dir: str = Field(default="uploads")
    base_url: str = Field(default="http://localhost:8000")

    # AWS S3
    aws_s3_bucket_name: Optional[str] = Field(default=None)
    aws_region: str = Field(default="us-east-1")
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)
    aws_endpoint_url: Optional[str] = Field(default=None)

    # Google Cloud Storage
    gcs_bucket_name: Optional[str] = Field(default=None)
    google_cloud_project_id: Optional[str] = Field(default=None)
    google_cloud_key_file: Optional[str] = Field(default=None)

    # Cloudinary
    cloudinary_cloud_name: Optional[str] = Field(default=None)
    cloudinary_api_key: Optional[str] = Field(default=None)
    cloudinary_api_secret: Optional[str] = Field(default=None)

    # Upload limits
    max_upload_size: int = Field(default=10 * 1024 * 1024)
    max_parcel_images: int = Field(default=10)
    allowed_mime_types: list[str] = Field(
        default_factory=lambda: [
            "image/jpeg",
            "image/jpg",
            "image/png",
            "image/gif",
            "image/webp",
        ]
    )

    # Auth
    jwt_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")
    jwt_expires_minutes: int = Field(default=24 * 60)
    salt_rounds: int = Field(default=10, ge=4, le=31)
    max_failed_login_attempts: int = Field(default=6)
    password_reset_ttl_seconds: int = Field(default=3600)
    google_client_id: Optional[str] = Field(default=None)

    # Login rate limiting (failed attempts per client address)
    login_rate_limit_attempts: int = Field(default=10)
    login_rate_limit_window_seconds: int = Field(default=15 * 60)

    # OCR
    ocr_provider: str = Field(default="mock-ocr")
    ocr_max_attempts: int = Field(default=3, ge=1)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
