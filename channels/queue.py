"""
channels/queue.py — In-process Queue Channel

Reference Channel backed by asyncio queues. Used by tests, by embedding
applications and as the bridge for transports that push messages from their
own callbacks.

    channel = QueueChannel("test")
    await channel.publish("42", "hello")     # user side
    reply = await channel.next_outbound()    # what the agent sent
    channel.close()                          # ends receive()
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional, Union

from channels.base import Channel, InboundMessage, OutboundMessage
from exceptions import ChannelClosedError
from observability.logger import get_logger

log = get_logger(__name__)

_CLOSED = object()


class QueueChannel(Channel):
    """Channel whose inbound side is fed programmatically."""

    def __init__(self, name: str = "queue", capacity: int = 0) -> None:
        self.name = name
        self._inbound: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()
        self._outbox: list[OutboundMessage] = []
        self._closed = False

    # ── User side ─────────────────────────────────────────────────────────────

    async def publish(
        self,
        chat_id_or_message: Union[str, InboundMessage],
        content: Optional[str] = None,
        sender_id: str = "user",
    ) -> InboundMessage:
        """Queue an inbound message. Accepts a prepared message or (chat_id, content)."""
        if self._closed:
            raise ChannelClosedError(f"Channel '{self.name}' is closed")
        if isinstance(chat_id_or_message, InboundMessage):
            message = chat_id_or_message
        else:
            if content is None:
                raise ValueError("content is required when publishing by chat_id")
            message = InboundMessage(
                channel=self.name,
                chat_id=chat_id_or_message,
                content=content,
                sender_id=sender_id,
            )
        await self._inbound.put(message)
        log.debug("channel.inbound_queued", channel=self.name, message_id=message.id)
        return message

    def close(self) -> None:
        """Stop the inbound stream once queued messages are consumed."""
        if self._closed:
            return
        self._closed = True
        self._inbound.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    async def next_outbound(self, timeout: Optional[float] = None) -> OutboundMessage:
        """Wait for the next message the agent sent."""
        if timeout is None:
            return await self._outbound.get()
        return await asyncio.wait_for(self._outbound.get(), timeout=timeout)

    @property
    def outbox(self) -> list[OutboundMessage]:
        """Every message sent so far, in order."""
        return list(self._outbox)

    @property
    def inbound_pending(self) -> int:
        return self._inbound.qsize()

    # ── Channel contract ──────────────────────────────────────────────────────

    async def receive(self) -> AsyncIterator[InboundMessage]:
        while True:
            item = await self._inbound.get()
            if item is _CLOSED:
                return
            yield item

    async def send(self, message: OutboundMessage) -> None:
        self._outbox.append(message)
        await self._outbound.put(message)
        log.debug(
            "channel.outbound_sent",
            channel=self.name,
            session_key=message.session_key,
            kind=message.kind.value,
        )
