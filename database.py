"""Engine construction and schema setup.

SQLite is used for local development and tests, PostgreSQL in deployment.
Tables come from the SQLModel metadata in ``models``.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

import config
from models import Settings


def create_db_engine(url: Optional[str] = None) -> Engine:
    url = url or config.database_url()
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    # Hosted Postgres requires SSL unless the URL says otherwise
    if "sslmode" not in url and "localhost" not in url:
        url += ("&" if "?" in url else "?") + "sslmode=require"
    return create_engine(url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create tables if they do not exist and make sure the settings row is there."""
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        if session.get(Settings, 1) is None:
            session.add(Settings(id=1, skip_offset=config.DEFAULT_SKIP_OFFSET))
            session.commit()
