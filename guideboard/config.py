"""
Configuration for the guide job board.

Environment variables (prefix GUIDEBOARD_):
- LOCK_TIMEOUT_SECONDS: max wait for a job row lock (default: 5.0)
- ADMIN_USER_IDS: JSON list of identities provisioned as admins
- CHANGE_FEED_CAPACITY: change events kept for polling (default: 1000)
- LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: INFO)
"""

import logging
import sys
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GUIDEBOARD_", env_file=".env")

    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    admin_user_ids: list[str] = Field(default_factory=list)
    change_feed_capacity: int = Field(default=1000, ge=1)
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger("guideboard")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
