"""Configuration settings for prswarm."""

from pathlib import Path

from pydantic_settings import BaseSettings

# Package directory (where this file lives)
_PACKAGE_DIR = Path(__file__).parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "prswarm"
    db_user: str = "agent"
    db_password: str = "agent"
    # Full async URL override, e.g. sqlite+aiosqlite:///prswarm.db
    database_url_override: str | None = None

    # Paths
    prompt_path: Path = _PACKAGE_DIR / "prompts" / "system.md"
    worktree_root: Path | None = None

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_events_enabled: bool = False

    # Model calls
    model_max_retries: int = 3
    model_retry_min_wait: float = 1.0
    model_retry_max_wait: float = 30.0
    max_output_tokens: int = 8192
    thinking_budget: int | None = None

    # Tick engine
    tool_concurrency: int = 8
    status_digest_limit: int = 5
    status_digest_chars: int = 200

    # User questions (seconds)
    question_poll_interval: float = 1.0
    question_default_timeout: int = 300

    # Sandbox
    command_timeout_ms: int = 120_000

    @property
    def database_url(self) -> str:
        """SQLAlchemy sync database URL (alembic)."""
        if self.database_url_override:
            return self.database_url_override.replace("+asyncpg", "").replace("+aiosqlite", "")
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "PRSWARM_"
        env_file = ".env"


# Global settings instance
settings = Settings()
