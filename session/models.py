"""
session/models.py — Persisted Session Model

One Session exists per (channel, conversation) pair, keyed
"<channel>:<chat_id>". The turn list is append-only; the SessionManager is
the only code that produces a new version of a session.
"""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, Field

from brain.types import Message


def session_key(channel: str, chat_id: str) -> str:
    """Build the canonical session key for a channel conversation."""
    return f"{channel}:{chat_id}"


class Session(BaseModel):
    """A conversation: ordered turns plus channel-scoped metadata."""

    key: str
    turns: list[Message] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def new(cls, key: str) -> "Session":
        now = time.time()
        return cls(key=key, created_at=now, updated_at=now)

    @property
    def channel(self) -> str:
        return self.key.split(":", 1)[0]

    @property
    def chat_id(self) -> str:
        _, _, rest = self.key.partition(":")
        return rest

    @property
    def last_turn(self) -> Message | None:
        return self.turns[-1] if self.turns else None

    def with_turn(self, turn: Message) -> "Session":
        """Return a new Session with `turn` appended. The receiver is unchanged."""
        return self.model_copy(
            update={"turns": [*self.turns, turn], "updated_at": time.time()}
        )

    def with_metadata(self, **values: Any) -> "Session":
        return self.model_copy(
            update={"metadata": {**self.metadata, **values}, "updated_at": time.time()}
        )

    def __len__(self) -> int:
        return len(self.turns)
