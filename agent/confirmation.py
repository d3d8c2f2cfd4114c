"""
agent/confirmation.py — Confirmation Manager + Handlers

Brokers approve/deny decisions for gated tool calls.

State machine per request:

    PENDING ──respond(approve|approve_all)──▶ APPROVED
            ──respond(deny)─────────────────▶ DENIED
            ──deadline elapsed──────────────▶ EXPIRED    (implicit denial)
            ──cancel()──────────────────────▶ CANCELLED

Each request owns one asyncio.Future. respond(), cancel() and deadline expiry
are its only writers and the first one wins; every later attempt sees a
resolved request. One manager serves every session and requests never block
each other.

The human-facing side is a ConfirmationHandler chosen once at startup
(build_handler). A handler either returns a decision directly (auto handlers,
terminal prompt) or returns None after handing the request to a channel, in
which case the channel later calls respond() with the user's answer.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from rich.console import Console
from rich.panel import Panel

from brain.types import ToolCall
from channels.base import MessageKind, OutboundMessage
from exceptions import ConfirmationStateError, UnknownConfirmationError
from observability.logger import get_logger

log = get_logger(__name__)

# Resolved requests remembered so late answers are rejected as "already resolved"
DEFAULT_HISTORY_SIZE = 1024

CALLBACK_PREFIX = "confirm"


# ─────────────────────────────────────────────────────────────────────────────
# Types
# ─────────────────────────────────────────────────────────────────────────────

class ConfirmationState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ConfirmationState.PENDING

    @property
    def is_approved(self) -> bool:
        return self is ConfirmationState.APPROVED


class Decision(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    APPROVE_ALL = "approve_all"     # approve + auto-approve this tool for the session

    @property
    def approves(self) -> bool:
        return self is not Decision.DENY


def _request_id() -> str:
    return f"confirm_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class ConfirmationRequest:
    """One gated action awaiting a decision."""
    description: str
    session_key: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_request_id)
    created_at: float = field(default_factory=time.time)
    deadline: Optional[float] = None          # absolute wall-clock seconds

    @classmethod
    def for_tool_call(
        cls,
        tool_call: ToolCall,
        session_key: str,
        timeout: Optional[float] = None,
    ) -> "ConfirmationRequest":
        """Build a request describing a model-requested tool call."""
        try:
            pretty = json.dumps(tool_call.arguments, indent=2, default=str)
        except (TypeError, ValueError):
            pretty = str(tool_call.arguments)
        now = time.time()
        return cls(
            description=(
                f"Tool '{tool_call.name}' wants to execute with arguments:\n"
                f"```json\n{pretty}\n```"
            ),
            session_key=session_key,
            payload={
                "tool_name": tool_call.name,
                "arguments": dict(tool_call.arguments),
                "tool_call_id": tool_call.id,
            },
            created_at=now,
            deadline=now + timeout if timeout is not None else None,
        )

    @property
    def tool_name(self) -> Optional[str]:
        return self.payload.get("tool_name")

    @property
    def tool_call_id(self) -> Optional[str]:
        return self.payload.get("tool_call_id")

    @property
    def channel(self) -> str:
        return self.session_key.split(":", 1)[0]


@dataclass(frozen=True)
class ConfirmationResponse:
    request_id: str
    decision: Decision
    reason: Optional[str] = None


# ─────────────────────────────────────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────────────────────────────────────

class ConfirmationHandler(ABC):
    """
    Presents a request to whoever decides.

    Return a ConfirmationResponse to decide immediately, or None when the
    decision will arrive later through ConfirmationManager.respond().
    Raising is treated like None.
    """

    @abstractmethod
    async def confirm(self, request: ConfirmationRequest) -> Optional[ConfirmationResponse]:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class AutoApproveHandler(ConfirmationHandler):
    """Approves everything. Development and trusted deployments only."""

    async def confirm(self, request: ConfirmationRequest) -> Optional[ConfirmationResponse]:
        return ConfirmationResponse(request.id, Decision.APPROVE, reason="auto-approved")


class AutoDenyHandler(ConfirmationHandler):
    """Denies everything."""

    async def confirm(self, request: ConfirmationRequest) -> Optional[ConfirmationResponse]:
        return ConfirmationResponse(request.id, Decision.DENY, reason="auto-denied")


_ANSWERS: dict[str, Decision] = {
    "y": Decision.APPROVE,
    "yes": Decision.APPROVE,
    "a": Decision.APPROVE_ALL,
    "all": Decision.APPROVE_ALL,
    "n": Decision.DENY,
    "no": Decision.DENY,
}


class CliConfirmationHandler(ConfirmationHandler):
    """
    Renders the request in a rich panel and reads y / n / a from the console.

    Input is read in a worker thread so the event loop keeps serving other
    sessions. EOF (Ctrl+D, closed stdin) means no decision.
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        input_fn: Optional[Callable[[str], str]] = None,
    ) -> None:
        self._console = console or Console()
        self._input = input_fn or self._console.input

    async def confirm(self, request: ConfirmationRequest) -> Optional[ConfirmationResponse]:
        self._console.print(
            Panel(
                f"{request.description}\n\n"
                f"[dim]Session: {request.session_key}[/]\n"
                f"Options: [bold green]y[/]es / [bold red]n[/]o / "
                f"[bold yellow]a[/]ll (approve future calls of this tool)",
                title="[bold yellow]⚠ Confirmation required[/]",
                border_style="yellow",
                padding=(0, 2),
            )
        )
        try:
            answer = await asyncio.get_running_loop().run_in_executor(None, self._input, "> ")
        except EOFError:
            log.info("confirmation.cli_eof", request_id=request.id)
            return None

        decision = _ANSWERS.get(answer.strip().lower(), Decision.DENY)
        colour = "green" if decision.approves else "red"
        self._console.print(f"[{colour}]{decision.value}[/]")
        return ConfirmationResponse(request.id, decision, reason="console")


SendFn = Callable[[OutboundMessage], Awaitable[None]]


class ChatConfirmationHandler(ConfirmationHandler):
    """
    Sends the request into the conversation as a message with callback
    tokens, then returns None. The channel answers later by passing the
    pressed token through parse_callback() into ConfirmationManager.respond().
    """

    def __init__(self, send: SendFn) -> None:
        self._send = send

    @staticmethod
    def build_buttons(request_id: str) -> list[tuple[str, str]]:
        return [
            ("✅ Yes", f"{CALLBACK_PREFIX}:{request_id}:y"),
            ("❌ No", f"{CALLBACK_PREFIX}:{request_id}:n"),
            ("✅ All", f"{CALLBACK_PREFIX}:{request_id}:a"),
        ]

    @staticmethod
    def parse_callback(data: str) -> Optional[tuple[str, Decision]]:
        """Decode "confirm:<request_id>:<y|n|a>". Returns None for anything else."""
        parts = data.strip().split(":")
        if len(parts) != 3 or parts[0] != CALLBACK_PREFIX or not parts[1]:
            return None
        decision = {"y": Decision.APPROVE, "a": Decision.APPROVE_ALL}.get(
            parts[2], Decision.DENY
        )
        return parts[1], decision

    async def confirm(self, request: ConfirmationRequest) -> Optional[ConfirmationResponse]:
        buttons = self.build_buttons(request.id)
        await self._send(
            OutboundMessage(
                session_key=request.session_key,
                content=f"🔐 Confirmation required\n\n{request.description}",
                kind=MessageKind.CONFIRMATION,
                metadata={"request_id": request.id, "buttons": buttons},
            )
        )
        return None


class HandlerKind(str, Enum):
    CLI = "cli"
    CHAT = "chat"
    AUTO_APPROVE = "auto_approve"
    AUTO_DENY = "auto_deny"


def build_handler(
    kind: Union[HandlerKind, str],
    send: Optional[SendFn] = None,
    console: Optional[Console] = None,
) -> ConfirmationHandler:
    """Construct the handler named by `kind`. CHAT requires a send callable."""
    kind = HandlerKind(kind)
    if kind is HandlerKind.AUTO_APPROVE:
        return AutoApproveHandler()
    if kind is HandlerKind.AUTO_DENY:
        return AutoDenyHandler()
    if kind is HandlerKind.CLI:
        return CliConfirmationHandler(console=console)
    if send is None:
        raise ValueError("ChatConfirmationHandler requires a send callable (a channel)")
    return ChatConfirmationHandler(send)


# ─────────────────────────────────────────────────────────────────────────────
# Manager
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class _Entry:
    request: ConfirmationRequest
    future: "asyncio.Future[ConfirmationState]"
    handler_task: Optional[asyncio.Task] = None


class ConfirmationManager:
    """
    Owns every outstanding confirmation request.

    Usage:
        manager = ConfirmationManager(build_handler("chat", send=channel.send))
        request_id = await manager.request(ConfirmationRequest.for_tool_call(...))
        state = await manager.await_decision(request_id)
    """

    def __init__(
        self,
        handler: ConfirmationHandler,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self._handler = handler
        self._entries: dict[str, _Entry] = {}
        self._history: OrderedDict[str, ConfirmationState] = OrderedDict()
        self._history_size = history_size
        self._auto_approved: set[tuple[str, str]] = set()

    @property
    def handler(self) -> ConfirmationHandler:
        return self._handler

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def request(self, request: ConfirmationRequest) -> str:
        """Register a PENDING request, dispatch it to the handler, return its id."""
        if request.id in self._entries or request.id in self._history:
            raise ConfirmationStateError(request.id, self.state(request.id).value)

        future: asyncio.Future[ConfirmationState] = asyncio.get_running_loop().create_future()
        entry = _Entry(request=request, future=future)
        self._entries[request.id] = entry

        log.info(
            "confirmation.requested",
            request_id=request.id,
            session_key=request.session_key,
            tool=request.tool_name,
        )

        if request.tool_name and self.is_auto_approved(request.session_key, request.tool_name):
            self._resolve(entry, ConfirmationState.APPROVED, "approved for all calls in session")
            return request.id

        entry.handler_task = asyncio.create_task(
            self._dispatch(entry), name=f"confirm-{request.id}"
        )
        return request.id

    def respond(
        self,
        request_id: str,
        decision: Union[Decision, str],
        reason: Optional[str] = None,
    ) -> ConfirmationState:
        """
        Record the decision for a PENDING request.

        Raises:
            UnknownConfirmationError: the id was never registered.
            ConfirmationStateError:   the request is already resolved.
        """
        entry = self._pending_entry(request_id)
        decision = Decision(decision)
        request = entry.request
        if decision is Decision.APPROVE_ALL and request.tool_name:
            self._auto_approved.add((request.session_key, request.tool_name))
            log.info(
                "confirmation.auto_approve_enabled",
                session_key=request.session_key,
                tool=request.tool_name,
            )
        state = ConfirmationState.APPROVED if decision.approves else ConfirmationState.DENIED
        self._resolve(entry, state, reason)
        return state

    def cancel(self, request_id: str, reason: Optional[str] = None) -> ConfirmationState:
        """Move a PENDING request to CANCELLED and wake its waiters."""
        entry = self._pending_entry(request_id)
        self._resolve(entry, ConfirmationState.CANCELLED, reason or "cancelled")
        return ConfirmationState.CANCELLED

    def cancel_session(self, session_key: str, reason: Optional[str] = None) -> int:
        """Cancel every pending request of one session. Returns how many."""
        entries = [e for e in self._entries.values() if e.request.session_key == session_key]
        for entry in entries:
            self._resolve(entry, ConfirmationState.CANCELLED, reason or "cancelled")
        return len(entries)

    async def await_decision(
        self,
        request_id: str,
        timeout: Optional[float] = None,
    ) -> ConfirmationState:
        """
        Suspend until the request leaves PENDING.

        `timeout` (seconds) overrides the request's own deadline; with
        neither, waits indefinitely. On expiry the request becomes EXPIRED.
        Cancelling the waiter does not resolve the request.
        """
        entry = self._entries.get(request_id)
        if entry is None:
            if request_id in self._history:
                return self._history[request_id]
            raise UnknownConfirmationError(request_id)

        if timeout is None and entry.request.deadline is not None:
            timeout = max(0.0, entry.request.deadline - time.time())

        try:
            return await asyncio.wait_for(asyncio.shield(entry.future), timeout=timeout)
        except asyncio.TimeoutError:
            self._resolve(entry, ConfirmationState.EXPIRED, "no decision before deadline")
            # Another writer may have won the race
            return entry.future.result()

    async def close(self) -> None:
        """Cancel every pending request. Used at shutdown."""
        for entry in list(self._entries.values()):
            self._resolve(entry, ConfirmationState.CANCELLED, "shutdown")

    # ── Queries ───────────────────────────────────────────────────────────────

    def state(self, request_id: str) -> ConfirmationState:
        if request_id in self._entries:
            return ConfirmationState.PENDING
        if request_id in self._history:
            return self._history[request_id]
        raise UnknownConfirmationError(request_id)

    def get(self, request_id: str) -> Optional[ConfirmationRequest]:
        entry = self._entries.get(request_id)
        return entry.request if entry else None

    def pending(self, session_key: Optional[str] = None) -> list[ConfirmationRequest]:
        return [
            e.request for e in self._entries.values()
            if session_key is None or e.request.session_key == session_key
        ]

    def is_auto_approved(self, session_key: str, tool_name: str) -> bool:
        return (session_key, tool_name) in self._auto_approved

    def clear_auto_approved(self, session_key: Optional[str] = None) -> None:
        if session_key is None:
            self._auto_approved.clear()
        else:
            self._auto_approved = {p for p in self._auto_approved if p[0] != session_key}

    # ── Internals ─────────────────────────────────────────────────────────────

    def _pending_entry(self, request_id: str) -> _Entry:
        entry = self._entries.get(request_id)
        if entry is not None:
            return entry
        if request_id in self._history:
            raise ConfirmationStateError(request_id, self._history[request_id].value)
        raise UnknownConfirmationError(request_id)

    async def _dispatch(self, entry: _Entry) -> None:
        request = entry.request
        try:
            response = await self._handler.confirm(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(
                "confirmation.handler_error",
                request_id=request.id,
                handler=repr(self._handler),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return

        if response is None:
            return
        if entry.future.done():
            log.debug("confirmation.late_handler_decision", request_id=request.id)
            return
        self.respond(request.id, response.decision, response.reason)

    def _resolve(
        self,
        entry: _Entry,
        state: ConfirmationState,
        reason: Optional[str],
    ) -> bool:
        """Single transition out of PENDING. Returns False if already resolved."""
        if entry.future.done():
            return False
        entry.future.set_result(state)
        request_id = entry.request.id
        self._entries.pop(request_id, None)
        self._history[request_id] = state
        while len(self._history) > self._history_size:
            self._history.popitem(last=False)

        task = entry.handler_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        log.info(
            "confirmation.resolved",
            request_id=request_id,
            session_key=entry.request.session_key,
            state=state.value,
            reason=reason,
        )
        return True

    def __repr__(self) -> str:
        return f"<ConfirmationManager handler={self._handler!r} pending={len(self._entries)}>"
