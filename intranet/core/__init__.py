"""Core module for the intranet expenses service."""
from .config import settings
from .database import Base, get_db, engine, transaction

__all__ = [
    "settings",
    "Base",
    "get_db",
    "engine",
    "transaction",
]
