from functools import lru_cache
from typing import Literal, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Server settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./coursechat.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Session cookie signing
    SESSION_SECRET: str = ""
    SESSION_MAX_AGE: int = 3600

    # Deployment variant
    REQUIRE_AUTH: bool = True
    IDENTITY_MODE: Literal["session", "shared", "anonymous"] = "session"
    PERSIST_PREFERENCES: bool = True
    DEFAULT_COURSE: str = "mathematik"

    # JSON list of {username, password, displayName}; built-in demo users when unset
    USERS_FILE: Optional[str] = None

    # Comma-separated list of allowed CORS origins
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    @model_validator(mode="after")
    def check_auth_mode(self) -> "Settings":
        """Login can only be enforced when identities come from the session."""
        if self.REQUIRE_AUTH and self.IDENTITY_MODE != "session":
            raise ValueError("REQUIRE_AUTH=true requires IDENTITY_MODE=session")
        return self

    @property
    def allowed_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


class ClientSettings(BaseSettings):
    """Settings for the polling chat client."""

    model_config = SettingsConfigDict(
        env_prefix="COURSECHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    API_BASE_URL: str = "http://localhost:3000/api"

    # Nominal reconciliation period in seconds, doubled while the view is hidden
    REFRESH_INTERVAL: float = 5.0

    # Distance from the bottom (px) under which the view stays pinned to the bottom
    SCROLL_BOTTOM_THRESHOLD: int = 5

    REQUEST_TIMEOUT: float = 10.0

    # Course shown when the stored preference cannot be read
    DEFAULT_COURSE: str = "mathematik"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


@lru_cache()
def get_client_settings() -> ClientSettings:
    return ClientSettings()


# Global settings instance
settings = get_settings()
