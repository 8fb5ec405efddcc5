"""
Runtime configuration for the engage caching layer.
All values come from environment variables with development defaults.
"""

import os
from pathlib import Path

# Local durable-store emulation and persistent cache locations
DB_PATH = os.getenv("ENGAGE_DB_PATH", "./data/engage.db")
CACHE_PATH = os.getenv("ENGAGE_CACHE_PATH", "./data/local_cache.json")

DEBUG = os.getenv("DEBUG", "true").lower() == "true"

# Local cache TTL classes (seconds)
TTL_USER_DATA_SEC = int(os.getenv("TTL_USER_DATA_SEC", "300"))
TTL_LIST_SEC = int(os.getenv("TTL_LIST_SEC", "1800"))
TTL_LEADERBOARD_SEC = int(os.getenv("TTL_LEADERBOARD_SEC", "300"))
TTL_DIRECTORY_SEC = int(os.getenv("TTL_DIRECTORY_SEC", "600"))
READ_THROUGH_TTL_SEC = int(os.getenv("READ_THROUGH_TTL_SEC", "1800"))

# Optimistic mutation windows
OPTIMISTIC_WINDOW_SEC = int(os.getenv("OPTIMISTIC_WINDOW_SEC", "30"))
EXIT_TRANSITION_MS = int(os.getenv("EXIT_TRANSITION_MS", "300"))

# Real-time reconciliation windows
RECONCILE_DEBOUNCE_MS = int(os.getenv("RECONCILE_DEBOUNCE_MS", "1500"))
RECONCILE_QUIET_WINDOW_MS = int(os.getenv("RECONCILE_QUIET_WINDOW_MS", "2000"))

# Fallback refresh after a submission, once background aggregation has had time to run
SUBMISSION_REFRESH_DELAY_MS = int(os.getenv("SUBMISSION_REFRESH_DELAY_MS", "3000"))

# Root of the read-through cache namespace
READ_THROUGH_ROOT = "cache"

# Version string
VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "true").lower() == "true"


def ensure_data_directories():
    """Ensure the database and cache directories exist."""
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    Path(CACHE_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_ttl_table():
    """TTL in milliseconds per cache kind."""
    from .types import CacheKind

    return {
        CacheKind.USER_DATA: TTL_USER_DATA_SEC * 1000,
        CacheKind.COMPLETIONS: TTL_USER_DATA_SEC * 1000,
        CacheKind.QUIZ_LIST: TTL_LIST_SEC * 1000,
        CacheKind.TASK_LIST: TTL_LIST_SEC * 1000,
        CacheKind.FORM_LIST: TTL_LIST_SEC * 1000,
        CacheKind.SYSTEM: READ_THROUGH_TTL_SEC * 1000,
        CacheKind.LEADERBOARD: TTL_LEADERBOARD_SEC * 1000,
        CacheKind.RANK: TTL_LEADERBOARD_SEC * 1000,
        CacheKind.DIRECTORY: TTL_DIRECTORY_SEC * 1000,
    }


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    ttl_settings = {
        "TTL_USER_DATA_SEC": TTL_USER_DATA_SEC,
        "TTL_LIST_SEC": TTL_LIST_SEC,
        "TTL_LEADERBOARD_SEC": TTL_LEADERBOARD_SEC,
        "TTL_DIRECTORY_SEC": TTL_DIRECTORY_SEC,
        "READ_THROUGH_TTL_SEC": READ_THROUGH_TTL_SEC,
    }
    for name, value in ttl_settings.items():
        if value < 0:
            issues.append(f"{name} must be >= 0")

    if OPTIMISTIC_WINDOW_SEC < 1:
        issues.append("OPTIMISTIC_WINDOW_SEC must be >= 1")

    if EXIT_TRANSITION_MS < 0:
        issues.append("EXIT_TRANSITION_MS must be >= 0")

    if RECONCILE_DEBOUNCE_MS < 0:
        issues.append("RECONCILE_DEBOUNCE_MS must be >= 0")

    if RECONCILE_QUIET_WINDOW_MS < 0:
        issues.append("RECONCILE_QUIET_WINDOW_MS must be >= 0")

    return issues
