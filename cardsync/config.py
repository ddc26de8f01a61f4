"""
Configuration - environment-driven settings for cardsync.

Values are read from the process environment (a local .env file is loaded
first). Timing constants for the sync engine live here too so every
component agrees on them.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment
load_dotenv()


# ---- Sync Timing (seconds) ----

SYNC_INTERVAL_S = 300.0       # Periodic sync cycle
MIN_PULL_INTERVAL_S = 180.0   # Minimum gap between automatic pulls
MIN_PUSH_INTERVAL_S = 30.0    # Cooldown before a busy trigger re-runs
SOON_DELAY_S = 1.5            # Debounce for ordinary edits
RATING_SYNC_DELAY_S = 300.0   # Debounce for rating-derived edits (batch reviews)
REQUEST_PACING_S = 0.35       # Gap between sequential remote requests


# ---- Remote Requests ----

REQUEST_TIMEOUT_S = 20.0
REQUEST_MAX_ATTEMPTS = 3
REQUEST_BASE_DELAY_S = 1.0
REQUEST_MAX_DELAY_S = 8.0


# ---- Storage ----

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./data/cardsync.db"
PUT_MANY_BATCH_SIZE = 200


def is_test_mode() -> bool:
    """Check if running in test mode."""
    return os.getenv("TEST_MODE", "false").lower() == "true"


def get_database_url() -> str:
    """
    Get the local database URL from environment variables.

    In test mode the database file is swapped for a ``test_`` prefixed one so
    test runs never touch the real study data.

    Returns:
        SQLAlchemy async connection string
    """
    url = os.getenv("CARDSYNC_DATABASE_URL", DEFAULT_DATABASE_URL)
    if is_test_mode():
        return url.replace("cardsync.db", "test_cardsync.db")
    return url


@dataclass(frozen=True)
class Settings:
    """Resolved process settings."""
    database_url: str
    mongo_uri: Optional[str]
    mongo_db_name: str
    openai_api_key: Optional[str]
    generation_model: str
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=get_database_url(),
            mongo_uri=os.getenv("MONGO_URI"),
            mongo_db_name=os.getenv("MONGO_DB_NAME", "cardsync"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            generation_model=os.getenv("CARDSYNC_GENERATION_MODEL", "gpt-4o-mini"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for scripts and long-running processes."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
