"""
tests/unit/test_channels.py — Channel messages, QueueChannel, TerminalChannel, ToolPolicies

Covers:
  - InboundMessage / OutboundMessage session-key helpers
  - QueueChannel:     publish → receive, close ends the stream, outbox
  - TerminalChannel:  scripted input, exit words, EOF, rendering by kind
  - ToolPolicies:     default, overrides, string coercion
"""

from __future__ import annotations

import io

import pytest
from rich.console import Console

from agent.policy import ToolPolicies, ToolPolicy
from channels.base import InboundMessage, MessageKind, OutboundMessage
from channels.queue import QueueChannel
from channels.terminal import TerminalChannel
from exceptions import ChannelClosedError


def _console() -> Console:
    return Console(file=io.StringIO(), force_terminal=False, width=100)


def _scripted(*lines):
    remaining = list(lines)

    def read(prompt: str) -> str:
        if not remaining:
            raise EOFError
        return remaining.pop(0)

    return read


class TestMessages:
    def test_inbound_session_key(self):
        msg = InboundMessage(channel="telegram", chat_id="42", content="hi")
        assert msg.session_key == "telegram:42"
        assert msg.id.startswith("msg_")

    def test_outbound_key_parts(self):
        msg = OutboundMessage(session_key="telegram:42:7", content="x")
        assert msg.channel == "telegram"
        assert msg.chat_id == "42:7"
        assert msg.kind is MessageKind.TEXT


class TestQueueChannel:
    @pytest.mark.asyncio
    async def test_publish_then_receive_until_closed(self):
        channel = QueueChannel("test")
        await channel.publish("42", "hello")
        await channel.publish(InboundMessage(channel="test", chat_id="7", content="hey"))
        channel.close()

        received = [m async for m in channel.receive()]
        assert [(m.session_key, m.content) for m in received] == [
            ("test:42", "hello"),
            ("test:7", "hey"),
        ]

    @pytest.mark.asyncio
    async def test_publish_after_close_rejected(self):
        channel = QueueChannel()
        channel.close()
        channel.close()
        assert channel.closed
        with pytest.raises(ChannelClosedError):
            await channel.publish("1", "late")

    @pytest.mark.asyncio
    async def test_publish_requires_content(self):
        with pytest.raises(ValueError):
            await QueueChannel().publish("1")

    @pytest.mark.asyncio
    async def test_send_records_outbox(self):
        channel = QueueChannel("test")
        await channel.send(OutboundMessage(session_key="test:1", content="a"))
        await channel.send(OutboundMessage(session_key="test:1", content="b"))
        first = await channel.next_outbound(timeout=1)
        assert first.content == "a"
        assert [m.content for m in channel.outbox] == ["a", "b"]


class TestTerminalChannel:
    @pytest.mark.asyncio
    async def test_reads_lines_and_stops_on_exit(self):
        console = _console()
        channel = TerminalChannel(
            chat_id="me", console=console, input_fn=_scripted("", "hello", "quit", "never")
        )
        received = []
        async for message in channel.receive():
            received.append(message)
            await channel.send(OutboundMessage(session_key=message.session_key, content="**hi**"))

        assert [(m.session_key, m.content) for m in received] == [("cli:me", "hello")]
        output = console.file.getvalue()
        assert "hi" in output
        assert "Goodbye" in output

    @pytest.mark.asyncio
    async def test_eof_ends_stream(self):
        channel = TerminalChannel(console=_console(), input_fn=_scripted())
        assert [m async for m in channel.receive()] == []

    @pytest.mark.asyncio
    async def test_error_and_confirmation_rendering(self):
        console = _console()
        channel = TerminalChannel(console=console, input_fn=_scripted())
        await channel.send(OutboundMessage(
            session_key="cli:local", content="secret prompt", kind=MessageKind.CONFIRMATION,
        ))
        await channel.send(OutboundMessage(
            session_key="cli:local", content="it broke", kind=MessageKind.ERROR,
        ))
        output = console.file.getvalue()
        assert "secret prompt" not in output
        assert "it broke" in output
        assert "Error" in output

    def test_declares_it_cannot_deliver_confirmations(self):
        assert TerminalChannel.delivers_confirmations is False
        assert QueueChannel.delivers_confirmations is True


class TestToolPolicies:
    def test_default_and_overrides(self):
        policies = ToolPolicies(
            default="auto",
            overrides={"book_flight": "require_confirmation", "rm": ToolPolicy.FORBIDDEN},
        )
        assert policies.resolve("search") is ToolPolicy.AUTO
        assert policies.resolve("book_flight") is ToolPolicy.REQUIRE_CONFIRMATION
        assert policies.resolve("book_flight").is_gated
        assert policies.resolve("rm") is ToolPolicy.FORBIDDEN
        assert not ToolPolicy.FORBIDDEN.is_gated

    def test_set(self):
        policies = ToolPolicies(default=ToolPolicy.REQUIRE_CONFIRMATION)
        policies.set("search", "auto")
        assert policies.resolve("search") is ToolPolicy.AUTO
        assert policies.resolve("other") is ToolPolicy.REQUIRE_CONFIRMATION
        assert policies.overrides() == {"search": ToolPolicy.AUTO}

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            ToolPolicies(default="sometimes")
