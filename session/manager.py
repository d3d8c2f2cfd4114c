"""
session/manager.py — Session Manager

Owns session lifecycle and is the only writer to the SessionStorage backend.

  - get_or_create(key)      idempotent; persists a fresh session on first use
  - load(key)               read-only; never fabricates a session
  - append_turn(key, turn)  copy-on-write append, durable before returning
  - update_metadata / delete / list_keys
  - turn_lock(key)          serializes whole agent-loop iterations per key

Writes for one key go through a per-key asyncio.Lock. No lock spans keys, so
sessions never block each other. A key's locks are dropped once no task holds
or waits on them. The in-process cache is an LRU bounded by `cache_size`;
storage stays the source of truth, so an evicted session is simply re-read.
The cache is replaced only after the backend write succeeds; a failed write
leaves the previous version in place both in the cache and on disk.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from brain.types import Message
from observability.logger import get_logger
from session.models import Session
from session.storage import SessionStorage

log = get_logger(__name__)

_DEFAULT_CACHE_SIZE = 256


class _KeyedLocks:
    """Per-key asyncio locks that exist only while some task holds or awaits them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class SessionManager:
    """
    Async-safe session manager shared by every channel and agent loop task.

    Usage:
        manager = SessionManager(MemoryStorage())
        session = await manager.get_or_create("cli:local")
        session = await manager.append_turn("cli:local", Message.user("hi"))
    """

    def __init__(self, storage: SessionStorage, cache_size: int = _DEFAULT_CACHE_SIZE) -> None:
        if cache_size < 1:
            raise ValueError("cache_size must be >= 1")
        self._storage = storage
        self._cache_size = cache_size
        self._cache: OrderedDict[str, Session] = OrderedDict()
        self._write_locks = _KeyedLocks()
        self._turn_locks = _KeyedLocks()

    @property
    def storage(self) -> SessionStorage:
        return self._storage

    @property
    def cached_count(self) -> int:
        return len(self._cache)

    @property
    def lock_count(self) -> int:
        """Keys that currently have a write or turn lock in use."""
        return len(self._write_locks) + len(self._turn_locks)

    # ── Locks ─────────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def turn_lock(self, key: str) -> AsyncIterator[None]:
        """Hold the per-session iteration lock for the duration of the block."""
        async with self._turn_locks.hold(key):
            yield

    def is_busy(self, key: str) -> bool:
        return self._turn_locks.locked(key)

    # ── Cache ─────────────────────────────────────────────────────────────────

    def _remember(self, session: Session) -> None:
        self._cache[session.key] = session
        self._cache.move_to_end(session.key)
        while len(self._cache) > self._cache_size:
            evicted, _ = self._cache.popitem(last=False)
            log.debug("session.cache_evicted", session_key=evicted)

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def load(self, key: str) -> Optional[Session]:
        """Return the stored session or None. Storage errors propagate."""
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached
        session = await self._storage.read(key)
        if session is not None:
            self._remember(session)
        return session

    async def list_keys(self) -> list[str]:
        return await self._storage.list_keys()

    # ── Writes ────────────────────────────────────────────────────────────────

    async def get_or_create(self, key: str) -> Session:
        """Return the session for `key`, creating and persisting it if unseen."""
        existing = await self.load(key)
        if existing is not None:
            return existing

        async with self._write_locks.hold(key):
            # Another task may have created it while we waited
            existing = await self.load(key)
            if existing is not None:
                return existing
            session = Session.new(key)
            await self._storage.write(session)
            self._remember(session)
            log.info("session.created", session_key=key)
            return session

    async def append_turn(self, key: str, turn: Message) -> Session:
        """
        Append one turn and persist it. Returns the new session version.

        The session is created if it does not exist yet.
        """
        async with self._write_locks.hold(key):
            current = await self.load(key)
            if current is None:
                current = Session.new(key)
            updated = current.with_turn(turn)
            await self._storage.write(updated)
            self._remember(updated)

        log.debug(
            "session.turn_appended",
            session_key=key,
            role=turn.role.value,
            turns=len(updated.turns),
        )
        return updated

    async def update_metadata(self, key: str, **values: Any) -> Session:
        async with self._write_locks.hold(key):
            current = await self.load(key)
            if current is None:
                current = Session.new(key)
            updated = current.with_metadata(**values)
            await self._storage.write(updated)
            self._remember(updated)
        return updated

    async def delete(self, key: str) -> bool:
        """Explicitly remove a session. Returns True if it existed."""
        async with self._write_locks.hold(key):
            removed = await self._storage.delete(key)
            self._cache.pop(key, None)
        if removed:
            log.info("session.deleted", session_key=key)
        return removed

    def __repr__(self) -> str:
        return f"<SessionManager storage={self._storage!r} cached={len(self._cache)}>"
