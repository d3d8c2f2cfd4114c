"""
channels/__init__.py — Parley channel contract
"""

from channels.base import Channel, InboundMessage, MessageKind, OutboundMessage
from channels.queue import QueueChannel

__all__ = [
    "Channel",
    "InboundMessage",
    "OutboundMessage",
    "MessageKind",
    "QueueChannel",
]
