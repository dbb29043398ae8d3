# src/qr_confirm/db/__init__.py
"""Engine, session factory and clock helpers shared by repositories."""

from .session import Base, SessionLocal, engine, get_db
from .time import Clock, as_utc, utcnow

__all__ = ["Base", "Clock", "SessionLocal", "as_utc", "engine", "get_db", "utcnow"]
