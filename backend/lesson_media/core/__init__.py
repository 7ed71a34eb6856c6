"""Core module for configuration and utilities."""

from lesson_media.core.config import settings
from lesson_media.core.database import Base, create_session_maker, worker_session_maker

__all__ = [
    "settings",
    "Base",
    "create_session_maker",
    "worker_session_maker",
]
