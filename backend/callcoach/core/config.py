from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    PROJECT_NAME: str = "CSR Call Coach"
    API_V1_STR: str = "/api/v1"
    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:5173"]

    # Database (training sessions, points awards)
    DATABASE_URL: str = "sqlite+aiosqlite:///./callcoach.db"

    # LLM
    LLM_API_KEY: str
    LLM_MODEL: str = "glm-4-air"
    LLM_TEMPERATURE: float = 0.3
    LLM_MAX_TOKENS: int = 4096
    LLM_TIMEOUT: int = 60

    # Analysis jobs
    ANALYSIS_ESTIMATED_TOTAL_SECONDS: float = 15.0
    ANALYSIS_PROGRESS_CAP: int = Field(95, ge=0, le=99)
    MIN_TRANSCRIPT_CHARS: int = 50

    # Synchronous fallback: one retry for upstream errors and timeouts
    FALLBACK_MAX_ATTEMPTS: int = 2
    FALLBACK_RETRY_WAIT_SECONDS: float = 1.5

    # Poll client
    POLL_INTERVAL_SECONDS: float = 2.0
    POLL_MAX_ATTEMPTS: int = 60

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/app.log"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding='utf-8', case_sensitive=True, extra='ignore')

settings = Settings()
