# core/config.py
from typing import Optional
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "Multipart Upload Simulator"
    LOG_LEVEL: str = "INFO"

    # Partitioning defaults (S3 style)
    DEFAULT_PART_SIZE: int = 5 * 1024 * 1024
    MIN_PART_SIZE: int = 1
    MAX_PARTS: int = 10000

    # Coordinator
    MAX_RETRIES: int = 3
    CONCURRENCY_LIMIT: int = 4

    # Presigned tokens
    TOKEN_TTL_SECONDS: int = 3600
    SINGLE_USE_TOKENS: bool = False
    PRESIGN_BASE_URL: str = "https://simulated-bucket.s3.amazonaws.com"

    # Simulated transport
    SIMULATED_LATENCY_SECONDS: float = 0.05
    FAILURE_RATE: float = 0.0
    CORRUPTION_RATE: float = 0.0
    TRANSPORT_SEED: Optional[int] = None

    # Session archive (in-memory unless REDIS_URL is set)
    REDIS_URL: Optional[str] = None
    SESSION_TTL_SECONDS: int = 7 * 24 * 60 * 60  # 7 days

    # Cleanup settings
    CLEANUP_INTERVAL_SECONDS: int = 600
    STALE_SESSION_SECONDS: int = 3600
    ARCHIVE_RETENTION_SECONDS: int = 48 * 60 * 60  # finished sessions kept 2 days

# Global settings instance
settings = Settings()
