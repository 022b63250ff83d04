"""Configuration settings for the application"""
import os
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import ConfigDict

# Get project root directory
PROJECT_ROOT = Path(__file__).parent.parent.absolute()

def get_database_url() -> str:
    """Get database URL, defaulting to SQLite for easy setup"""
    default_url = f"sqlite:///{PROJECT_ROOT}/careflow.db"
    url = os.getenv("DATABASE_URL", default_url)
    # Some providers use postgres:// but SQLAlchemy requires postgresql://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url

class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    DATABASE_URL: str = get_database_url()

    # Remote model endpoint (OpenAI-compatible chat completions)
    MODEL_ENDPOINT_URL: Optional[str] = None
    MODEL_API_KEY: Optional[str] = None
    MODEL_NAME: str = "baichuan/baichuan-m2-32b"
    MODEL_TEMPERATURE: float = 0.3
    MODEL_MAX_TOKENS: int = 2048
    MODEL_TIMEOUT_SECONDS: float = 20.0
    MODEL_MAX_RETRIES: int = 2
    MODEL_BACKOFF_BASE_SECONDS: float = 1.0

    # Per-patient submission throttling
    RATE_LIMIT_MAX_REQUESTS: int = 10
    RATE_LIMIT_WINDOW_SECONDS: int = 3600

    # Urgency buckets (score below threshold)
    URGENCY_HIGH_BELOW: int = 40
    URGENCY_MEDIUM_BELOW: int = 70

    # Glucose readings outside these bounds always go to a clinician (mg/dL)
    CRITICAL_GLUCOSE_LOW: float = 70
    CRITICAL_GLUCOSE_HIGH: float = 300

    # Review routing
    REVIEW_SCORE_THRESHOLD: int = 70
    REVIEW_MEDIUM_SCORE_FLOOR: int = 30
    REVIEW_COMPLEX_CONDITIONS: bool = True

    # Background pipeline retries for storage errors, and the sweep that
    # finishes queries stuck in processing
    PIPELINE_MAX_ATTEMPTS: int = 3
    PIPELINE_RETRY_DELAY_SECONDS: float = 0.5
    PIPELINE_STALL_SECONDS: float = 300.0
    MAINTENANCE_INTERVAL_SECONDS: float = 60.0

    # Live channel
    HEARTBEAT_INTERVAL_SECONDS: float = 30.0
    HEARTBEAT_MAX_MISSED: int = 3
    CONNECTION_BUFFER_SIZE: int = 100

    # Input limits
    MAX_TITLE_LENGTH: int = 200
    MAX_DESCRIPTION_LENGTH: int = 5000

    AUDIT_HASH_SALT: str = "careflow-audit"
    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"  # Ignore extra environment variables
    )

settings = Settings()
