from functools import lru_cache
from pathlib import Path
from typing import Annotated, List
from uuid import UUID

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

ASSISTANT_USER_ID = UUID("00000000-0000-0000-0000-000000000000")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="BaatKare API", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode and SQL echo")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
            "http://127.0.0.1:5173",
        ],
        description="List of allowed CORS origins",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$",
        description="Optional regular expression that matches allowed CORS origins",
    )

    database_url: str = Field(
        default="sqlite+pysqlite:///./baatkare.db",
        description="SQLAlchemy URL of the durable chat store",
    )

    jwt_secret_key: str = Field(default="changeme")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=7 * 24 * 60)

    chat_history_default_limit: int = Field(default=50)
    chat_history_max_limit: int = Field(default=200)
    chat_message_max_length: int = Field(default=4000)

    websocket_keepalive_timeout_seconds: float = Field(
        default=30, description="Idle time before the server pings a websocket client"
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=25, description="Minimum spacing between keepalive pings"
    )
    realtime_typing_ttl_seconds: float = Field(
        default=8, description="Seconds after which a typing indicator expires"
    )

    scheduler_enabled: bool = Field(default=True, description="Run the scheduled delivery loop")
    scheduler_interval_seconds: float = Field(default=60, description="Seconds between delivery ticks")

    assistant_user_id: UUID = Field(default=ASSISTANT_USER_ID)
    assistant_mention: str = Field(default="@smartbot")
    assistant_context_messages: int = Field(default=10)
    assistant_timeout_seconds: float = Field(default=20)
    assistant_typing_ms_per_char: float = Field(default=20)
    assistant_min_delay_seconds: float = Field(default=1.0)
    assistant_max_delay_seconds: float = Field(default=3.0)

    gemini_api_key: str | None = Field(default=None, description="Google Gemini API key")
    gemini_model: str = Field(default="gemini-2.5-flash")
    gemini_api_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Base URL of the Gemini REST API",
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("assistant_mention")
    @classmethod
    def normalize_mention(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("assistant_mention must not be empty")
        return value if value.startswith("@") else f"@{value}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
