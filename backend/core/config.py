from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./ventylab.db"

    # Backend
    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000
    APP_DEBUG: bool = True
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False  # True for production (structured JSON), False for dev (colored)
    LOG_SQL: bool = False   # Enable SQLAlchemy query logging

    # Auth
    AUTH_SECRET_KEY: str = "change-me-in-production"
    AUTH_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # HTTP rate limiting (per client, slowapi limit strings)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "300/minute"
    RATE_LIMIT_AUTH: str = "10/minute"

    # AI dispatcher
    AI_DEFAULT_PROVIDER: str = "gemini"
    AI_FALLBACK_CHAIN: list[str] = ["gemini", "openai", "claude"]
    AI_RATE_WINDOW_SECONDS: float = 60.0
    AI_TEMPERATURE: float = 0.7
    AI_MAX_TOKENS: int = 2048
    AI_TIMEOUT_SECONDS: float = 30.0
    AI_MAX_RETRIES: int = 3
    AI_HISTORY_LIMIT: int = 1000

    GEMINI_ENABLED: bool = True
    GEMINI_API_KEY: str | None = None
    GEMINI_MODEL: str = "gemini-2.0-flash"
    GEMINI_RATE_LIMIT: int = 60

    OPENAI_ENABLED: bool = True
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4"
    OPENAI_RATE_LIMIT: int = 50

    CLAUDE_ENABLED: bool = True
    ANTHROPIC_API_KEY: str | None = None
    CLAUDE_MODEL: str = "claude-3-opus-20240229"
    CLAUDE_RATE_LIMIT: int = 40

    @property
    def is_production(self) -> bool:
        return not self.APP_DEBUG

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
