"""
session/__init__.py — Parley session persistence
"""

from session.manager import SessionManager
from session.models import Session, session_key
from session.storage import (
    FileStorage,
    MemoryStorage,
    SessionStorage,
    StorageBackend,
    build_storage,
)

__all__ = [
    "Session",
    "SessionManager",
    "SessionStorage",
    "MemoryStorage",
    "FileStorage",
    "StorageBackend",
    "build_storage",
    "session_key",
]
