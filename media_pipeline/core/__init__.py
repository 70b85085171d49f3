"""Core module for configuration and utilities."""

from media_pipeline.core.config import settings
from media_pipeline.core.database import Base, get_db

__all__ = [
    "settings",
    "Base",
    "get_db",
]
