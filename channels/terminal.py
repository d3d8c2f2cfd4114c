"""
channels/terminal.py — Terminal Channel

Single-conversation channel for the local console. Replies are rendered as
markdown in a rich Panel.

The next line is read only after the previous reply was printed, so a
CliConfirmationHandler prompting mid-turn is the sole reader of stdin while
a turn runs.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

from channels.base import Channel, InboundMessage, MessageKind, OutboundMessage
from observability.logger import get_logger

log = get_logger(__name__)

_EXIT_WORDS = {"exit", "quit"}


class TerminalChannel(Channel):
    """Console REPL channel. Session key is "cli:<chat_id>"."""

    name = "cli"
    delivers_confirmations = False

    def __init__(
        self,
        chat_id: str = "local",
        console: Optional[Console] = None,
        input_fn: Optional[Callable[[str], str]] = None,
        prompt: str = "you> ",
    ) -> None:
        self.chat_id = chat_id
        self.console = console or Console()
        self._input = input_fn or self.console.input
        self._prompt = prompt
        self._reply_ready = asyncio.Event()

    async def receive(self) -> AsyncIterator[InboundMessage]:
        while True:
            try:
                line = await asyncio.get_running_loop().run_in_executor(
                    None, self._input, self._prompt
                )
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/]")
                return

            text = line.strip()
            if not text:
                continue
            if text.lower() in _EXIT_WORDS:
                self.console.print("[dim]Goodbye.[/]")
                return

            self._reply_ready.clear()
            yield InboundMessage(channel=self.name, chat_id=self.chat_id, content=text)
            await self._reply_ready.wait()

    async def send(self, message: OutboundMessage) -> None:
        if message.kind is MessageKind.CONFIRMATION:
            # Only CliConfirmationHandler prompts on the terminal
            log.warning("channel.confirmation_dropped", channel=self.name, session_key=message.session_key)
            return
        body = message.content.strip() or "[dim](empty response)[/]"
        if message.kind is MessageKind.ERROR:
            self.console.print(Panel(body, title="[bold red]Error[/]", border_style="red"))
        else:
            self.console.print(Panel(Markdown(body), border_style="cyan", padding=(0, 1)))
        self._reply_ready.set()
