"""Configuration from .env file."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    STORY_API_URL: str = "http://localhost:3000/api"
    STORY_API_TIMEOUT: float = 150.0  # Story generation can take minutes
    DEFAULT_LANGUAGE: str = "nl"
    DEFAULT_AGE: str = "6-8"

    MAX_COMPREHENSION_ATTEMPTS: int = 2
    # Post each accepted quiz submission back to the story backend.
    REPORT_COMPREHENSION_RESULTS: bool = True
    # How far back to look for earlier quiz submissions when resuming.
    COMPREHENSION_RESULTS_DAYS: int = 30

    DATA_DIR: str = "data"
    SESSIONS_FILE: str = "story_sessions.json"
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"


settings = Settings()
