"""
Service configuration.

Settings come from the process environment, optionally seeded from a .env
file. A .env never overwrites variables that are already set.

Usage:
    from gatekeeper.config import load_settings

    settings = load_settings()
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from gatekeeper.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_VARS = {
    "fairscale_api_url": "FAIRSCALE_API_URL",
    "fairscale_api_key": "FAIRSCALE_API_KEY",
    "redis_url": "REDIS_URL",
    "database_path": "DATABASE_PATH",
    "telegram_bot_token": "TELEGRAM_BOT_TOKEN",
    "log_level": "LOG_LEVEL",
    "log_format": "LOG_FORMAT",
    "recheck_concurrency": "RECHECK_CONCURRENCY",
    "nonce_retention_hours": "NONCE_RETENTION_HOURS",
    "score_deadline_seconds": "SCORE_DEADLINE_SECONDS",
}


class Settings(BaseModel):
    """Validated service settings."""
    fairscale_api_url: str = "https://api.fairscale.xyz"
    fairscale_api_key: str = ""
    redis_url: str = "redis://localhost:6379"
    database_path: str = "data/gatekeeper.db"
    telegram_bot_token: Optional[str] = None
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_format: str = Field(default="json", pattern="^(json|text)$")
    recheck_concurrency: int = Field(default=1, ge=1, le=10)
    # Must stay above the 10 minute freshness window
    nonce_retention_hours: int = Field(default=24, ge=1)
    score_deadline_seconds: float = Field(default=30.0, gt=0)


def load_settings(env_file: Optional[Union[str, Path]] = None) -> Settings:
    """
    Build Settings from the environment.

    Args:
        env_file: Optional .env path. Defaults to ./.env when present.

    Raises:
        ConfigurationError: If a variable is present but invalid
    """
    env_path = Path(env_file) if env_file else Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)
        logger.debug(f"Loaded .env from {env_path}")
    elif env_file:
        raise ConfigurationError(f".env not found: {env_path}")

    raw = {}
    for field_name, var in ENV_VARS.items():
        value = os.getenv(var)
        if value not in (None, ""):
            raw[field_name] = value.upper() if field_name == "log_level" else value

    try:
        settings = Settings(**raw)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    if not settings.fairscale_api_key:
        logger.warning("FAIRSCALE_API_KEY is not set; provider calls will be unauthenticated")
    return settings
