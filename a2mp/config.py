"""
Configuration management for the A2MP meeting engine
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "A2MP - Asynchronous AI Meeting Platform"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"  # DEBUG=true forces DEBUG

    # Database
    DATABASE_URL: str = "sqlite:///./a2mp.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10
    SQLITE_BUSY_TIMEOUT_SECONDS: float = 30.0

    # Claude API - one key per rate limiter identity
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_MODERATOR_API_KEY: str = ""  # falls back to ANTHROPIC_API_KEY
    CLAUDE_MODEL: str = "claude-sonnet-4-20250514"
    CLAUDE_MAX_TOKENS: int = 4096

    # Rate limits (per identity)
    MODERATOR_REQUESTS_PER_MINUTE: int = 15
    MODERATOR_TOKENS_PER_MINUTE: int = 1_000_000
    MODERATOR_REQUESTS_PER_DAY: int = 1500
    PARTICIPANT_REQUESTS_PER_MINUTE: int = 15
    PARTICIPANT_TOKENS_PER_MINUTE: int = 1_000_000
    PARTICIPANT_REQUESTS_PER_DAY: int = 1500
    MIN_REQUEST_INTERVAL_SECONDS: float = 4.0

    # Retry policy
    RETRY_MAX_ATTEMPTS: int = 4
    RETRY_INITIAL_DELAY_SECONDS: float = 2.0
    RETRY_MAX_DELAY_SECONDS: float = 120.0
    RETRY_BACKOFF_MULTIPLIER: float = 2.0

    # Lifecycle driver
    ENGINE_ENABLED: bool = True
    ENGINE_TICK_SECONDS: float = 8.0

    # Turn engine heuristics
    MAX_TURNS_PER_MEETING: int = 20
    SELECTION_HISTORY_WINDOW: int = 5
    RESPONSE_HISTORY_WINDOW: int = 8
    DEADLOCK_MIN_HISTORY: int = 4
    DEADLOCK_WINDOW: int = 6
    DEADLOCK_MIN_AI_TURNS: int = 3
    DEADLOCK_HUMAN_WINDOW: int = 5
    DEADLOCK_KEYWORD_MIN_MESSAGES: int = 2
    DEADLOCK_KEYWORD_MIN_PHRASES: int = 2
    DEADLOCK_ALTERNATION_TURNS: int = 4
    DEADLOCK_LENGTH_SAMPLE: int = 3
    DEADLOCK_LENGTH_SIMILARITY: float = 0.3
    FAIRNESS_WINDOW: int = 5
    FAIRNESS_MAX_OCCURRENCES: int = 3
    FAIRNESS_MIN_HISTORY: int = 3
    NONE_FORCE_BELOW_TURNS: int = 3
    NONE_FORCE_FROM_TURNS: int = 8
    MIN_RESPONSE_CHARS: int = 10
    MAX_CONSECUTIVE_GENERATION_FAILURES: int = 3

    # Persona generation: "lazy" (on first selection) or "eager" (queued on start)
    PERSONA_GENERATION_MODE: str = "lazy"

    # Whiteboard: "append" new items, or "replace" whole categories
    WHITEBOARD_UPDATE_POLICY: str = "append"

    # Email invitations (SMTP); empty host logs instead of sending
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    MAIL_FROM: str = "a2mp@example.com"
    PARTICIPANT_BASE_URL: str = "http://localhost:3000/participant"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"  # comma-separated

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
