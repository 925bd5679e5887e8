"""
Configuration settings for SheetSense.
"""

import os
from typing import Optional


class Settings:
    """Application settings loaded from environment."""

    # Database
    MONGODB_URL: str = os.environ.get("MONGODB_URI", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.environ.get("DB_NAME", "sheetsense")

    # API Keys
    GEMINI_API_KEY: str = os.environ.get("GEMINI_API_KEY", "")
    EMERGENT_LLM_KEY: Optional[str] = os.environ.get("EMERGENT_LLM_KEY")
    LLM_API_KEY: str = GEMINI_API_KEY or EMERGENT_LLM_KEY or ""
    GEMINI_MODEL: str = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")

    # Server
    PORT: int = int(os.environ.get("PORT", 8001))
    HOST: str = os.environ.get("HOST", "0.0.0.0")
    DEBUG: bool = os.environ.get("DEBUG", "False").lower() == "true"
    CORS_ORIGINS: list = os.environ.get("CORS_ORIGINS", "*").split(",")

    # AI Configuration
    ROLL_NUMBER_DETECTOR: str = os.environ.get("ROLL_NUMBER_DETECTOR", "gemini")  # gemini | mock
    LLM_TIMEOUT: int = int(os.environ.get("LLM_TIMEOUT", 120))  # seconds
    LLM_TEMPERATURE: float = 0.0
    MAX_CONCURRENT_LLM_CALLS: int = int(os.environ.get("MAX_CONCURRENT_LLM_CALLS", 3))
    CORRECTION_ESTIMATE_MINUTES: str = "5-10 minutes"

    # Roll-number matching
    AUTO_MATCH_THRESHOLD: float = 0.7  # similarity gate between auto-match and manual review
    CANDIDATE_THRESHOLD: float = 0.3
    MAX_ALTERNATIVES: int = 3

    # Image processing
    IMAGE_MAX_DIMENSION: int = 2000
    JPEG_QUALITY: int = 85

    # File upload
    MAX_FILE_SIZE_MB: int = int(os.environ.get("MAX_FILE_SIZE_MB", 30))
    RECOMMENDED_FILE_SIZE_MB: int = 10
    ALLOWED_EXTENSIONS: list = ["pdf", "png", "jpg", "jpeg"]

    # Storage
    STORAGE_BASE_URL: str = os.environ.get("STORAGE_BASE_URL", "http://localhost:8001")
    STORAGE_BUCKET: str = "answer_sheets"

    # Logging
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

    def validate(self):
        """Validate critical settings."""
        if not self.MONGODB_URL:
            raise ValueError("MONGODB_URI environment variable not set")
        if self.ROLL_NUMBER_DETECTOR not in ("gemini", "mock"):
            raise ValueError(f"Unknown ROLL_NUMBER_DETECTOR '{self.ROLL_NUMBER_DETECTOR}'")
        if self.ROLL_NUMBER_DETECTOR == "gemini" and not self.LLM_API_KEY:
            raise ValueError("GEMINI_API_KEY or EMERGENT_LLM_KEY environment variable not set")
        return True


# Global settings instance
settings = Settings()
