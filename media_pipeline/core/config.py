"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Media Delivery Pipeline"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./media_pipeline.db"
    DB_CREATE_TABLES: bool = False  # create tables at startup (development)

    # Redis (Celery broker and result backend)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Storage Configuration
    # STORAGE_BACKEND: local, s3, minio
    STORAGE_BACKEND: str = "local"

    # Local Storage (when STORAGE_BACKEND=local)
    LOCAL_STORAGE_PATH: str = "./storage"
    LOCAL_STORAGE_BASE_URL: str = "http://localhost:8000/media"
    LOCAL_SIGNING_SECRET: str = "dev-secret-change-me"

    # S3/MinIO/Compatible Storage (when STORAGE_BACKEND=s3 or minio)
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = "us-east-1"
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None
    STORAGE_CONNECT_TIMEOUT_SECONDS: float = 3.0
    STORAGE_READ_TIMEOUT_SECONDS: float = 10.0
    STORAGE_MAX_ATTEMPTS: int = 3
    UPLOAD_KEY_PREFIX: str = "videos"

    # CDN Configuration (optional, falls back to direct storage URLs)
    CDN_BASE_URL: Optional[str] = None
    CDN_KEY_PAIR_ID: Optional[str] = None
    CDN_PRIVATE_KEY: Optional[str] = None  # PEM encoded RSA key

    # Signed URLs
    SIGNED_URL_MAX_TTL_SECONDS: int = 3600
    DELIVERY_URL_TTL_SECONDS: int = 300

    # Transcoding
    TRANSCODER_BACKEND: str = "mediaconvert"
    MEDIACONVERT_REGION: str = "us-east-1"
    MEDIACONVERT_ENDPOINT_URL: Optional[str] = None
    MEDIACONVERT_ROLE_ARN: str = ""
    TRANSCODE_OUTPUT_BUCKET: str = ""
    TRANSCODE_DEFAULT_LADDER: str = "hd4k,hd1080,hd720,sd480"
    TRANSCODE_SUBMIT_MAX_ATTEMPTS: int = 5
    TRANSCODE_RETRY_INITIAL_DELAY: float = 2.0
    TRANSCODE_RETRY_MAX_DELAY: float = 60.0
    TRANSCODE_RETRY_BACKOFF: float = 2.0
    TRANSCODE_POLL_MAX_ATTEMPTS: int = 3
    TRANSCODER_CALL_TIMEOUT_SECONDS: float = 15.0
    TRANSCODE_JOB_TIMEOUT_SECONDS: int = 21600
    TRANSCODE_POLL_INTERVAL_SECONDS: int = 30

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def default_ladder(self) -> list[str]:
        """Quality ids requested when a submit call names no ladder."""
        return [q.strip() for q in self.TRANSCODE_DEFAULT_LADDER.split(",") if q.strip()]

    @property
    def delivery_ttl_seconds(self) -> int:
        """Delivery URL lifetime, never above the signing maximum."""
        return min(self.DELIVERY_URL_TTL_SECONDS, self.SIGNED_URL_MAX_TTL_SECONDS)


settings = Settings()
