"""Engine and session factory for the SQL reference backend.

Stores in :mod:`cipherroom.services.directory` open one short-lived session per
call from a worker thread (``asyncio.to_thread``), so SQLite connections must
be shareable across threads.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from cipherroom.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base for the profiles, channels, channel_keys and messages tables."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import cipherroom.models  # noqa: E402,F401


def engine_options(database_url: str) -> dict[str, Any]:
    """Return ``create_engine`` keyword arguments suited to ``database_url``."""
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return {"pool_pre_ping": True}

    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        # One shared connection, or every worker thread sees its own empty database.
        options["poolclass"] = StaticPool
    return options


engine = create_engine(
    settings.database_url,
    echo=settings.sql_debug,
    **engine_options(settings.database_url),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables() -> None:
    """Create the reference backend tables if they do not exist."""
    Base.metadata.create_all(bind=engine)
