"""Runtime configuration for the arrival portal.

Everything is read from environment variables once at import time.  There
is no settings file; unset variables fall back to defaults that are good
enough for a local SQLite run.
"""

from __future__ import annotations

import os

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "arrival.db")

DATABASE_URL = os.getenv("DATABASE_URL", "")
REDIS_URL = os.getenv("REDIS_URL")

# Bootstrap admin account, created or re-keyed on startup when both are set.
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASS = os.getenv("ADMIN_PASS")

DEFAULT_SKIP_OFFSET = int(os.getenv("DEFAULT_SKIP_OFFSET", "3"))
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def database_url() -> str:
    """Return a SQLAlchemy URL for the configured database.

    Hosted Postgres providers hand out ``postgres://`` URLs, which SQLAlchemy
    no longer accepts, so those are rewritten.  A bare path (or nothing)
    means a local SQLite file.
    """
    url = DATABASE_URL.strip()
    if not url:
        return f"sqlite:///{DEFAULT_DB_FILENAME}"
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    if "://" not in url:
        return f"sqlite:///{url}"
    return url
