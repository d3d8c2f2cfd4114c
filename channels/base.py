"""
channels/base.py — Channel Contract

A Channel is the transport between end users and the agent loop. Concrete
transports (terminal, Telegram, Discord) live outside the core and only
need to implement:

  - receive() -> async iterator of InboundMessage
  - send(OutboundMessage)     raises ChannelDeliveryError on failure

Session keys are always "<channel>:<chat_id>".
"""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Optional

from session.models import session_key


def _message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


class MessageKind(str, Enum):
    TEXT = "text"
    ERROR = "error"
    CONFIRMATION = "confirmation"   # carries callback tokens in metadata


@dataclass
class InboundMessage:
    """A message from a user, as delivered by a channel."""
    channel: str
    chat_id: str
    content: str
    sender_id: str = "user"
    id: str = field(default_factory=_message_id)
    timestamp: float = field(default_factory=time.time)
    reply_to: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def session_key(self) -> str:
        return session_key(self.channel, self.chat_id)


@dataclass
class OutboundMessage:
    """A message from the agent to a conversation."""
    session_key: str
    content: str
    kind: MessageKind = MessageKind.TEXT
    id: str = field(default_factory=_message_id)
    reply_to: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def channel(self) -> str:
        return self.session_key.split(":", 1)[0]

    @property
    def chat_id(self) -> str:
        return self.session_key.partition(":")[2]


class Channel(ABC):
    """Abstract transport consumed by AgentLoop.run()."""

    name: str = "channel"
    # False when send() cannot show CONFIRMATION messages to the user or
    # route their callback tokens back while a turn is running
    delivers_confirmations: bool = True

    @abstractmethod
    def receive(self) -> AsyncIterator[InboundMessage]:
        """Yield inbound messages until the channel closes."""
        ...

    @abstractmethod
    async def send(self, message: OutboundMessage) -> None:
        """Deliver one message. Raises ChannelDeliveryError on failure."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
