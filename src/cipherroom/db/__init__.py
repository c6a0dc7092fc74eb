# src/cipherroom/db/__init__.py
"""SQLAlchemy reference backend: declarative base, engine and sessions."""

from .session import Base, SessionLocal, create_tables, engine_options

__all__ = ["Base", "SessionLocal", "create_tables", "engine_options"]
