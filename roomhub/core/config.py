"""Runtime settings for the realtime hub.

Values come from the environment (case-insensitive) or an optional ``.env`` file.
"""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Web settings
    CORS_ORIGINS: list[str] = ["*"]
    ADMIN_TOKEN: str = ""

    # Bearer token verification (tokens are issued by the auth service)
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"

    # Session lifecycle
    HANDSHAKE_TIMEOUT_SECONDS: float = 10.0
    HEARTBEAT_INTERVAL_SECONDS: float = 15.0
    HEARTBEAT_TIMEOUT_SECONDS: float = 45.0
    MAX_OUTBOUND_QUEUE: int = 1000
    MAX_SESSIONS_PER_USER: int = 10

    # Presence
    TYPING_TTL_SECONDS: float = 5.0

    # Membership authority: memory|http
    MEMBERSHIP_BACKEND: str = "memory"
    ROOM_API_URL: str = "http://localhost:8080/api"
    ROOM_API_TOKEN: str = ""
    ROOM_API_TIMEOUT_SECONDS: float = 5.0

    # Recent-activity read model: memory|redis
    ACTIVITY_BACKEND: str = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"
    ACTIVITY_HISTORY_LIMIT: int = 50

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings_cache
    _settings_cache = None
