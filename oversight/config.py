"""Configuration settings for the oversight service."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "oversight"
    db_user: str = "agent"
    db_password: str = "agent"

    # When false every store-backed operation degrades to a logged no-op
    store_enabled: bool = True

    # Logging
    log_level: str = "INFO"

    # Team lead profiles (JSON). Defaults ship with the package.
    team_config_path: Path | None = None

    # Review history window
    review_window_days: int = 30
    review_history_limit: int = 100

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "OVERSIGHT_"
        env_file = ".env"


# Global settings instance
settings = Settings()
