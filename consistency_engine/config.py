"""
Configuration for the Consistency Engine
========================================

Environment variables:
- OPENROUTER_API_KEY: API key for OpenRouter (AI reconciliation parser)
- RECONCILIATION_MODEL: Model used to propose changes (default: google/gemini-2.5-flash)
- LLM_TIMEOUT: Seconds before an AI call is abandoned (default: 120)
- MAX_UPLOAD_BYTES: Largest accepted reconciliation upload (default: 20 MB)
- LOG_LEVEL: Root log level (default: INFO)

DATABASE_URL is read directly by db.session so tests can swap it at runtime.
"""

from typing import List, Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # OpenRouter (AI reconciliation parser)
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    reconciliation_model: str = "google/gemini-2.5-flash"
    llm_timeout: int = 120
    llm_max_tokens: int = 12000
    llm_temperature: float = 0.1

    # Prompt shaping
    clause_body_preview_chars: int = 500

    # Uploads
    max_upload_bytes: int = 20 * 1024 * 1024

    # Service
    cors_allow_origins: List[str] = ["*"]
    log_level: str = "INFO"
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    def validate_llm_config(self) -> List[str]:
        """Validate AI configuration, return list of warnings"""
        warnings = []
        if not self.openrouter_api_key:
            warnings.append("OPENROUTER_API_KEY not set; reconciliation uploads will fail with AI_PARSE_ERROR")
        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
