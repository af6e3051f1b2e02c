from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from typing import Any, ClassVar
import json
from pathlib import Path
import os


class Settings(BaseSettings):
    API_V1_STR: str = "/api/v1"

    # JWT verification (tokens are issued by the identity provider)
    SECRET_KEY: str = "fallback_secret_for_dev_only"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Use an absolute path so running the app from different directories
    # (e.g., repo root or backend/) always resolves the same DB file.
    BASE_DIR: ClassVar[Path] = Path(__file__).resolve().parents[2]
    SQLALCHEMY_DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'propchat.db'}"

    # Redis is only used for the optional cross-instance realtime bus
    REDIS_URL: str = "redis://localhost:6379/0"
    WS_BUS_ENABLED: bool = False

    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    CORS_ALLOW_ALL: bool = False

    LOG_LEVEL: str = "INFO"
    ENABLE_TRACING: bool = False
    OTEL_TRACES_SAMPLER_RATIO: float = 1.0

    # Messaging limits
    MAX_MESSAGE_LENGTH: int = 4000
    MAX_CLIENT_TOKEN_LENGTH: int = 128
    THREAD_LIST_LIMIT: int = 50
    MESSAGE_PAGE_LIMIT: int = 200

    # Realtime gateway
    TYPING_TTL_SECONDS: float = 5.0
    WS_PER_USER_LIMIT: int = 10
    WS_SEND_QUEUE_SIZE: int = 64
    WS_SEND_TIMEOUT: float = 10.0
    WS_PING_INTERVAL: float = 30.0
    WS_PONG_TIMEOUT: float = 45.0
    WS_AUTH_TIMEOUT: float = 10.0
    WS_DB_CONCURRENCY: int = 8

    @field_validator("CORS_ORIGINS", mode="before")
    def split_origins(cls, v: Any) -> list[str]:
        """Parse comma-separated or JSON list of origins from environment."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return parsed
            except json.JSONDecodeError:
                pass
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("LOG_LEVEL", mode="before")
    def normalize_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper() or "INFO"
        return v

    @model_validator(mode="after")
    def allow_all_if_requested(cls, values: "Settings") -> "Settings":
        if values.CORS_ALLOW_ALL:
            values.CORS_ORIGINS = ["*"]
        return values

    @model_validator(mode="after")
    def clamp_realtime_limits(cls, values: "Settings") -> "Settings":
        # A zero or negative cap would refuse every connection / drop every event
        if values.WS_PER_USER_LIMIT <= 0:
            values.WS_PER_USER_LIMIT = 1
        if values.WS_SEND_QUEUE_SIZE <= 0:
            values.WS_SEND_QUEUE_SIZE = 1
        if values.WS_DB_CONCURRENCY <= 0:
            values.WS_DB_CONCURRENCY = 8
        if values.TYPING_TTL_SECONDS <= 0:
            values.TYPING_TTL_SECONDS = 5.0
        return values


def _env_file() -> str:
    return os.getenv("ENV_FILE", str(Path(__file__).resolve().parents[3] / ".env"))


def load_settings() -> "Settings":
    return Settings(_env_file=_env_file())


settings = load_settings()


def _redis_url() -> str:
    env_url = os.getenv("REDIS_URL")
    if env_url:
        return env_url
    return getattr(settings, "REDIS_URL", "redis://localhost:6379/0")


REDIS_URL = _redis_url()
