"""
session/storage.py — Session Storage Backends

Durable key → Session mapping. Two backends, selected by StorageBackend:

  - MemoryStorage — process-local dict, deep copies in and out
  - FileStorage   — one JSON document per key in a directory

Contract for every backend:
  read(key)        -> Session | None   (None means "never written")
  write(session)   -> None             (durable when it returns)
  delete(key)      -> bool
  list_keys()      -> list[str]

Failures raise StorageUnavailableError (I/O) or CorruptSessionError
(unreadable record). "Not found" is never an error.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union
from urllib.parse import quote, unquote

from pydantic import ValidationError

from exceptions import CorruptSessionError, StorageUnavailableError
from observability.logger import get_logger
from session.models import Session

log = get_logger(__name__)

_SUFFIX = ".json"


class StorageBackend(str, Enum):
    MEMORY = "memory"
    FILE = "file"


class SessionStorage(ABC):
    """Abstract storage backend used by SessionManager."""

    @abstractmethod
    async def read(self, key: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def write(self, session: Session) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def list_keys(self) -> list[str]:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


# ─────────────────────────────────────────────────────────────────────────────
# In-memory backend
# ─────────────────────────────────────────────────────────────────────────────

class MemoryStorage(SessionStorage):
    """
    Process-local storage. Stored sessions are deep copies, so callers can
    never mutate the persisted state through a returned object.
    """

    def __init__(self) -> None:
        self._data: dict[str, Session] = {}

    async def read(self, key: str) -> Optional[Session]:
        stored = self._data.get(key)
        return stored.model_copy(deep=True) if stored is not None else None

    async def write(self, session: Session) -> None:
        self._data[session.key] = session.model_copy(deep=True)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def list_keys(self) -> list[str]:
        return sorted(self._data.keys())

    def __len__(self) -> int:
        return len(self._data)


# ─────────────────────────────────────────────────────────────────────────────
# File backend
# ─────────────────────────────────────────────────────────────────────────────

class FileStorage(SessionStorage):
    """
    One JSON file per session key. The key is URL-quoted into the file name
    so "telegram:123" becomes "telegram%3A123.json".

    Writes go to a temp file in the same directory, are fsync'd, then
    os.replace()'d over the target, so a reader sees either the old or the
    new document and never a partial one. On POSIX the directory is fsync'd
    after the rename. Blocking I/O runs in a worker thread via
    loop.run_in_executor().
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self._dir = Path(directory).expanduser()

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, key: str) -> Path:
        return self._dir / (quote(key, safe="") + _SUFFIX)

    async def read(self, key: str) -> Optional[Session]:
        return await self._offload(self._read_sync, key)

    async def write(self, session: Session) -> None:
        await self._offload(self._write_sync, session)
        log.debug("storage.file_written", session_key=session.key, turns=len(session.turns))

    async def delete(self, key: str) -> bool:
        return await self._offload(self._delete_sync, key)

    async def list_keys(self) -> list[str]:
        return await self._offload(self._list_sync)

    @staticmethod
    async def _offload(fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    # ── Blocking helpers (worker thread) ──────────────────────────────────────

    def _read_sync(self, key: str) -> Optional[Session]:
        path = self.path_for(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageUnavailableError(key, f"Cannot read session file {path}: {e}") from e

        try:
            return Session.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise CorruptSessionError(key, f"Session file {path} is corrupt: {e}") from e

    def _write_sync(self, session: Session) -> None:
        path = self.path_for(session.key)
        payload = session.model_dump_json(indent=2)
        tmp_name: Optional[str] = None
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._dir, prefix=".tmp-", suffix=_SUFFIX
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
            self._fsync_dir()
        except OSError as e:
            raise StorageUnavailableError(
                session.key, f"Cannot write session file {path}: {e}"
            ) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    log.warning("storage.tmp_cleanup_failed", path=tmp_name)

    def _fsync_dir(self) -> None:
        # Persists the rename itself; directories cannot be opened on Windows
        if os.name != "posix":
            return
        fd = os.open(self._dir, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def _delete_sync(self, key: str) -> bool:
        path = self.path_for(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageUnavailableError(key, f"Cannot delete session file {path}: {e}") from e

    def _list_sync(self) -> list[str]:
        if not self._dir.exists():
            return []
        try:
            names = [
                p.name for p in self._dir.iterdir()
                if p.is_file() and p.name.endswith(_SUFFIX) and not p.name.startswith(".tmp-")
            ]
        except OSError as e:
            raise StorageUnavailableError("*", f"Cannot list {self._dir}: {e}") from e
        return sorted(unquote(n[: -len(_SUFFIX)]) for n in names)

    def __repr__(self) -> str:
        return f"<FileStorage dir={str(self._dir)!r}>"


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────

def build_storage(
    kind: Union[StorageBackend, str],
    path: Optional[Union[str, Path]] = None,
) -> SessionStorage:
    """Construct the storage backend named by `kind`."""
    backend = StorageBackend(kind)
    if backend is StorageBackend.MEMORY:
        return MemoryStorage()
    if path is None:
        raise ValueError("FileStorage requires a directory path")
    return FileStorage(path)
