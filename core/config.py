"""
Core Configuration
Consolidated configuration settings for the Doc Authoring Assistant
"""

import logging
import os
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

BASE_PATH = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=f"{BASE_PATH}/.env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
    )

    PROJECT_NAME: str = "Doc Authoring Assistant"
    ENVIRONMENT: Literal["dev", "pro"] = "dev"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # FastAPI
    FASTAPI_API_V1_PATH: str = "/api/v1"
    CORS_ALLOWED_ORIGINS: list[str] = [
        "http://127.0.0.1:8000",
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # LLM
    OPENAI_API_KEY: str | None = None
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_TEMPERATURE_DEFAULT: float = 0.3
    LLM_MAX_TOKENS: int = 2400
    OPENAI_TIMEOUT_SECS: int = 60

    # Documents are written under <WORKSPACE_ROOT>/docs/<folder>/<slug>.md
    WORKSPACE_ROOT: str = "."

    # Auto-chat (sticky agent)
    AUTO_CHAT_ENABLED: bool = True
    AUTO_CHAT_TIMEOUT_MINUTES: int = 30
    AUTO_CHAT_DOCUMENT_UPDATES: bool = True

    # Routing
    PENDING_DECISION_TTL_MINUTES: int = 10
    ROUTER_SESSION_IDLE_MINUTES: int = 30

    # Document excerpt sizes sent to the model (characters)
    DOC_CONTEXT_MAX_CHARS: int = 6000
    DOC_FIRST_QUESTION_CONTEXT_CHARS: int = 3000

    # Persistent key/value state: "memory" | "redis" | "sql"
    STATE_BACKEND: Literal["memory", "redis", "sql"] = "memory"
    REDIS_URL: str | None = None
    DATABASE_URL: str = "sqlite+aiosqlite:///./doc_authoring_state.sqlite"


@lru_cache
def get_settings() -> Settings:
    return Settings()


# Global config instance
settings = get_settings()
