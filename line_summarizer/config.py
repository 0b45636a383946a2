from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings."""

    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="allow"  # Allow extra fields from .env
    )

    # Application
    APP_NAME: str = "LINE Summarizer"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # API
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8001

    # MongoDB
    MONGODB_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "line_summarizer"

    # Redis (optional - for membership caching)
    REDIS_URL: str = ""  # Example: "redis://localhost:6379/0"

    # ========== Dashboard tokens (HS256 - Shared Secret) ==========
    # Tokens are issued by the identity service; we only validate them
    JWT_SECRET_KEY: str = "dev_secret_key_change_in_production_min_32_chars_required"
    JWT_ALGORITHM: str = "HS256"

    # Membership cache (role lookups for the permission guard)
    MEMBERSHIP_CACHE_TTL: int = 60

    # ========== LINE Messaging API ==========
    LINE_CHANNEL_SECRET: str = ""
    LINE_CHANNEL_ACCESS_TOKEN: str = ""
    LINE_API_URL: str = "https://api.line.me"
    LINE_API_TIMEOUT: float = 5.0

    # ========== Summary generation (Gemini) ==========
    GEMINI_API_KEY: str = ""
    GEMINI_API_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_MODEL: str = "gemini-1.5-flash"
    SUMMARY_TIMEOUT_SECONDS: float = 10.0
    SUMMARY_MAX_TRANSCRIPT_MESSAGES: int = 500

    # ========== Session lifecycle ==========
    SESSION_MAX_MESSAGES: int = 50
    SESSION_TIMEOUT_HOURS: float = 24
    SESSION_MIN_MESSAGES_FOR_SUMMARY: int = 1
    SESSION_SWEEP_INTERVAL_SECONDS: int = 300  # 0 disables the maintenance loop

    # Rooms without an activation-code binding are routed here ("" = skip them)
    DEFAULT_ORGANIZATION_SLUG: str = ""

    # ========== Automation forwarding (fire-and-forget) ==========
    AUTOMATION_WEBHOOK_URL: str = ""
    AUTOMATION_WEBHOOK_TIMEOUT: float = 5.0

    # Logging
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_JSON_FORMAT: bool = False  # Set to True in production for structured logging

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8000"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: List[str] = ["*"]
    CORS_ALLOW_HEADERS: List[str] = ["*"]

    # API Documentation (Swagger UI / OpenAPI)
    ENABLE_DOCS: bool = True
    PROJECT_NAME: str = "LINE Chat Session Summarizer"
    API_VERSION: str = "1.0.0"


settings = Settings()
