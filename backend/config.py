"""
Module: config.py
Description: Environment-driven settings for the SpendWise advisor service.

Settings are read once at process start (``.env`` is honoured through
python-dotenv) and handed to the components that need them. Nothing else
in the service reads ``os.environ`` directly.

Usage:
    settings = Settings.from_env()
    limiter = UsageLimiter(redis_client, daily_limit=settings.daily_message_limit)
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
    "http://127.0.0.1:3000",
]


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass
class Settings:
    """Runtime configuration."""

    database_url: str = "sqlite:///./spendwise_advisor.db"
    redis_url: str = "redis://localhost:6379/0"

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"
    model_request_timeout_seconds: int = 30

    daily_message_limit: int = 25
    rate_limit_fail_open: bool = False

    chat_stream_timeout_seconds: int = 120
    chat_history_limit: int = 20

    cors_origins: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    # Identity layer
    jwt_jwks_url: Optional[str] = None
    jwt_secret: Optional[str] = None
    auth_bypass: bool = False
    auth_bypass_user_id: str = "demo_user_123"
    environment: str = "development"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        load_dotenv()

        raw_key = os.getenv("OPENAI_API_KEY", "")
        origins = os.getenv("CORS_ORIGINS")

        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            openai_api_key=raw_key.strip() or None,
            openai_model=os.getenv("OPENAI_MODEL", cls.openai_model),
            model_request_timeout_seconds=_env_int(
                "MODEL_REQUEST_TIMEOUT_SECONDS", cls.model_request_timeout_seconds
            ),
            daily_message_limit=_env_int("CHAT_DAILY_MESSAGE_LIMIT", cls.daily_message_limit),
            rate_limit_fail_open=_env_bool("RATE_LIMIT_FAIL_OPEN", cls.rate_limit_fail_open),
            chat_stream_timeout_seconds=_env_int(
                "CHAT_STREAM_TIMEOUT_SECONDS", cls.chat_stream_timeout_seconds
            ),
            chat_history_limit=_env_int("CHAT_HISTORY_LIMIT", cls.chat_history_limit),
            cors_origins=(
                [o.strip() for o in origins.split(",") if o.strip()]
                if origins else list(DEFAULT_CORS_ORIGINS)
            ),
            jwt_jwks_url=os.getenv("JWT_JWKS_URL") or None,
            jwt_secret=os.getenv("JWT_SECRET") or None,
            auth_bypass=_env_bool("AUTH_BYPASS"),
            auth_bypass_user_id=os.getenv("AUTH_BYPASS_USER_ID", cls.auth_bypass_user_id),
            environment=os.getenv("ENVIRONMENT", cls.environment),
        )
