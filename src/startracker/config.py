"""Configuration constants for Star Tracker."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw)
    except ValueError:
        return default


DATABASE_URL = os.environ.get("STARTRACKER_DATABASE_URL", "sqlite:///startracker.db")
SESSION_SECRET = os.environ.get("STARTRACKER_SESSION_SECRET", "change-this-session-secret")
PARENT_PIN = os.environ.get("STARTRACKER_PARENT_PIN", "1234")
PARENT_USER_ID = os.environ.get("STARTRACKER_PARENT_USER_ID", "parent")
_log_path_raw = os.environ.get("STARTRACKER_LOG_PATH", "").strip()
LOG_PATH: Optional[Path] = Path(_log_path_raw) if _log_path_raw else None
STRICT_CATALOG = _env_flag("STARTRACKER_STRICT_CATALOG")
DEFAULT_WEEKLY_BONUS_STARS = _env_int("STARTRACKER_DEFAULT_WEEKLY_BONUS", 5)

# Fallback magnitude for a penalty id that no longer resolves to a catalog entry.
MISSING_PENALTY_STARS = 1
DEFAULT_ACTIVITY_STARS: Tuple[int, int, int] = (1, 2, 3)
DEFAULT_ACTIVITY_ICON = "⭐"
DEFAULT_PENALTY_ICON = "⚠️"
DEFAULT_BONUS_ICON = "🌟"
DEFAULT_REWARD_COST = 10
DEFAULT_HISTORY_LIMIT = 30
DEFAULT_TRANSACTION_LIMIT = 50

__all__ = [
    "DATABASE_URL",
    "SESSION_SECRET",
    "PARENT_PIN",
    "PARENT_USER_ID",
    "LOG_PATH",
    "STRICT_CATALOG",
    "DEFAULT_WEEKLY_BONUS_STARS",
    "MISSING_PENALTY_STARS",
    "DEFAULT_ACTIVITY_STARS",
    "DEFAULT_ACTIVITY_ICON",
    "DEFAULT_PENALTY_ICON",
    "DEFAULT_BONUS_ICON",
    "DEFAULT_REWARD_COST",
    "DEFAULT_HISTORY_LIMIT",
    "DEFAULT_TRANSACTION_LIMIT",
]
