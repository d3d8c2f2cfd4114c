"""
agent/loop.py — Agent Loop

Drives one inbound-message-to-reply cycle end to end:

    1. Load/create the session, build the prompt (ContextBuilder)
    2. Persist the user turn
    3. Call the model (BaseLLMClient) with the registry's tool schemas
    4. For each requested tool call, resolve its ToolPolicy:
         forbidden             → refusal tool result
         require_confirmation  → ConfirmationManager request + await;
                                 anything but APPROVED → refusal tool result
         auto / approved       → SkillBus.dispatch()
    5. Feed results back to step 3 until a final message or max_iterations
    6. Every turn is persisted as soon as it is produced

Iterations for the same session are serialized by SessionManager.turn_lock;
different sessions run concurrently. Refusals are ordinary tool results, not
errors. A model failure that survives the client's own retries becomes one
assistant error turn; nothing is rolled back.

Usage:
    loop = AgentLoop(llm, LLMConfig(model="..."), registry, sessions, confirmations)
    result = await loop.handle("cli:local", "book a flight to NYC")

    await loop.run(channel)     # serve a channel until it closes or stop()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from agent.confirmation import (
    ChatConfirmationHandler,
    ConfirmationManager,
    ConfirmationRequest,
    ConfirmationState,
)
from agent.context_builder import ContextBuilder, default_preamble
from agent.policy import ToolPolicies, ToolPolicy
from brain.llm_client import BaseLLMClient
from brain.types import LLMConfig, LLMResponse, Message, ToolCall, ToolResult
from channels.base import Channel, InboundMessage, MessageKind, OutboundMessage
from exceptions import ChannelDeliveryError, LLMError, ProtocolError
from observability.logger import bind_session, clear_session, get_logger
from session.manager import SessionManager
from skills.bus import SkillBus
from skills.registry import SkillRegistry
from skills.types import SkillCall

log = get_logger(__name__)

# Max model + tool-call iterations per inbound message
_MAX_ITER = 20

_ERROR_PREFIX = "Sorry, I encountered an error"

_REFUSALS = {
    ConfirmationState.DENIED: "the user denied this action",
    ConfirmationState.EXPIRED: "no confirmation was received before the deadline",
    ConfirmationState.CANCELLED: "the request was cancelled before it was confirmed",
}


class TurnStatus(str, Enum):
    SUCCESS = "success"
    ITER_LIMIT = "iter_limit"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TurnResult:
    """Outcome of one AgentLoop.handle() call."""
    status: TurnStatus
    text: str
    session_key: str
    iterations: int = 0
    tool_calls: int = 0

    @property
    def ok(self) -> bool:
        return self.status is TurnStatus.SUCCESS


class AgentLoop:
    """
    Coordinates the model/tool cycle for every session.

    Inject all dependencies via the constructor; main.build_runtime() wires
    them from Settings.
    """

    def __init__(
        self,
        llm_client: BaseLLMClient,
        llm_config: LLMConfig,
        registry: SkillRegistry,
        sessions: SessionManager,
        confirmations: ConfirmationManager,
        skill_bus: Optional[SkillBus] = None,
        context_builder: Optional[ContextBuilder] = None,
        policies: Optional[ToolPolicies] = None,
        max_iterations: int = _MAX_ITER,
        confirmation_timeout: Optional[float] = None,
        system_preamble: Optional[str] = None,
        agent_name: str = "Parley",
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self._llm = llm_client
        self._config = llm_config
        self._registry = registry
        self._sessions = sessions
        self._confirmations = confirmations
        self._bus = skill_bus or SkillBus(registry)
        self._ctx = context_builder or ContextBuilder()
        self._policies = policies or ToolPolicies()
        self._max_iter = max_iterations
        self._confirm_timeout = confirmation_timeout
        self._preamble = system_preamble
        self._agent_name = agent_name

        self._active: dict[str, asyncio.Task] = {}       # session_key → running handle()
        self._inflight: set[asyncio.Task] = set()        # tasks spawned by run()
        self._run_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def confirmations(self) -> ConfirmationManager:
        return self._confirmations

    # ─────────────────────────────────────────────────────────────────────────
    # Public: one inbound message
    # ─────────────────────────────────────────────────────────────────────────

    async def handle(self, session_key: str, text: str) -> TurnResult:
        """
        Process one inbound message for `session_key` and return the outcome.

        Waits for any in-flight iteration of the same session to finish first.
        """
        async with self._sessions.turn_lock(session_key):
            bind_session(session_key)
            task = asyncio.current_task()
            if task is not None:
                self._active[session_key] = task
            log.info("agent_loop.turn_start", user_message=text[:120])
            t0 = time.monotonic()
            try:
                result = await self._cycle(session_key, text)
                log.info(
                    "agent_loop.turn_done",
                    status=result.status.value,
                    iterations=result.iterations,
                    tool_calls=result.tool_calls,
                    ms=round((time.monotonic() - t0) * 1000),
                )
                return result
            except asyncio.CancelledError:
                # Cancelled before the cycle could record anything
                log.info("agent_loop.turn_cancelled")
                return TurnResult(TurnStatus.CANCELLED, "Request cancelled.", session_key)
            except Exception as e:
                log.error(
                    "agent_loop.turn_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return TurnResult(TurnStatus.ERROR, f"{_ERROR_PREFIX}: {e}", session_key)
            finally:
                if self._active.get(session_key) is task:
                    self._active.pop(session_key, None)
                clear_session()

    def cancel(self, session_key: str) -> bool:
        """
        Cancel the in-flight iteration for a session.

        Outstanding confirmations are cancelled; a gated tool that was not
        yet approved is never executed. Returns True if something was running.
        """
        cancelled = self._confirmations.cancel_session(session_key, reason="turn cancelled")
        task = self._active.get(session_key)
        if task is not None and not task.done():
            task.cancel()
            log.info("agent_loop.cancel_requested", session_key=session_key)
            return True
        return cancelled > 0

    # ─────────────────────────────────────────────────────────────────────────
    # Public: serve a channel
    # ─────────────────────────────────────────────────────────────────────────

    async def run(self, channel: Channel) -> None:
        """
        Consume the channel's inbound stream until it ends or stop() is called.

        One task per message. Sessions proceed concurrently; messages for the
        same session are applied in turn-lock order. Confirmation callback
        tokens ("confirm:<id>:<y|n|a>") are routed to the ConfirmationManager
        instead of starting a turn.
        """
        self._stopping = False
        self._run_task = asyncio.current_task()
        log.info("agent_loop.serving", channel=channel.name)
        try:
            async for message in channel.receive():
                if self._route_callback(message):
                    continue
                task = asyncio.create_task(
                    self._serve_message(channel, message),
                    name=f"turn-{message.session_key}",
                )
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
        except asyncio.CancelledError:
            if not self._stopping:
                raise
        finally:
            self._run_task = None
            if self._stopping:
                for task in self._inflight:
                    task.cancel()
            if self._inflight:
                await asyncio.gather(*self._inflight, return_exceptions=True)
            log.info("agent_loop.stopped", channel=channel.name)

    def stop(self) -> None:
        """End run(). In-flight turns are cancelled."""
        self._stopping = True
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()

    async def _serve_message(self, channel: Channel, message: InboundMessage) -> None:
        key = message.session_key
        result = await self.handle(key, message.content)
        reply = OutboundMessage(
            session_key=key,
            content=result.text,
            kind=MessageKind.ERROR if result.status is TurnStatus.ERROR else MessageKind.TEXT,
            reply_to=message.id,
        )
        try:
            await channel.send(reply)
        except ChannelDeliveryError as e:
            log.warning("agent_loop.delivery_failed", session_key=key, error=str(e))
            async with self._sessions.turn_lock(key):
                await self._sessions.append_turn(
                    key, Message.assistant(f"{_ERROR_PREFIX}: reply could not be delivered ({e})")
                )

    def _route_callback(self, message: InboundMessage) -> bool:
        parsed = ChatConfirmationHandler.parse_callback(message.content)
        if parsed is None:
            return False
        request_id, decision = parsed
        try:
            self._confirmations.respond(request_id, decision, reason=f"{message.channel} callback")
        except ProtocolError as e:
            log.warning(
                "agent_loop.callback_rejected",
                request_id=request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Core cycle
    # ─────────────────────────────────────────────────────────────────────────

    async def _cycle(self, key: str, text: str) -> TurnResult:
        session = await self._sessions.get_or_create(key)
        user_msg = Message.user(text)
        prompt = self._ctx.build(session, user_msg, self._system_preamble())
        await self._persist(key, user_msg)

        tools = (
            self._registry.to_tool_schemas()
            if getattr(self._llm, "supports_tools", True)
            else []
        )

        unanswered: list[ToolCall] = []
        dispatched: set[str] = set()
        tool_count = 0
        iteration = 0
        try:
            for iteration in range(1, self._max_iter + 1):
                log.debug("agent_loop.llm_call", iteration=iteration, msg_count=len(prompt))

                # ── Model call ────────────────────────────────────────────────
                try:
                    response: LLMResponse = await self._llm.generate(
                        messages=prompt,
                        config=self._config,
                        tools=tools or None,
                    )
                except LLMError as e:
                    log.error(
                        "agent_loop.llm_failed",
                        iteration=iteration,
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )
                    reply = f"{_ERROR_PREFIX}: {e}"
                    await self._persist(key, Message.assistant(reply))
                    return TurnResult(TurnStatus.ERROR, reply, key, iteration, tool_count)

                # ── No tool calls → done ──────────────────────────────────────
                if not response.has_tool_calls:
                    reply = response.content or ""
                    await self._persist(key, Message.assistant(reply))
                    return TurnResult(TurnStatus.SUCCESS, reply, key, iteration, tool_count)

                # ── Tool calls → assistant message, then one result per call ──
                calls = _unique_ids(response.tool_calls)
                assistant = Message.assistant_tool_calls(calls, content=response.content)
                unanswered = list(calls)
                await self._persist(key, assistant)
                prompt.append(assistant)

                while unanswered:
                    call = unanswered[0]
                    result = await self._run_tool(key, call, dispatched)
                    unanswered.pop(0)
                    tool_msg = Message.tool_response(result)
                    await self._persist(key, tool_msg)
                    prompt.append(tool_msg)
                    tool_count += 1

        except asyncio.CancelledError:
            log.info("agent_loop.cycle_cancelled", iteration=iteration, unanswered=len(unanswered))
            for call in unanswered:
                if call.id in dispatched:
                    outcome = "execution was interrupted"
                else:
                    outcome = "was not executed"
                await self._persist(key, Message.tool_response(ToolResult(
                    tool_call_id=call.id,
                    name=call.name,
                    content=f"Tool '{call.name}' {outcome}: the request was cancelled.",
                    is_error=True,
                )))
            return TurnResult(TurnStatus.CANCELLED, "Request cancelled.", key, iteration, tool_count)

        log.warning("agent_loop.max_iter_reached", iterations=self._max_iter)
        reply = (
            f"I reached the maximum of {self._max_iter} steps for this request "
            f"without finishing. Please try again or narrow the request."
        )
        await self._persist(key, Message.assistant(reply))
        return TurnResult(TurnStatus.ITER_LIMIT, reply, key, self._max_iter, tool_count)

    # ─────────────────────────────────────────────────────────────────────────
    # Tool execution
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_tool(self, key: str, call: ToolCall, dispatched: set[str]) -> ToolResult:
        """
        Resolve policy, confirm if gated, execute. Always returns a result.
        The call id is added to `dispatched` once execution starts.
        """
        policy = self._policies.resolve(call.name)

        if policy is ToolPolicy.FORBIDDEN:
            log.warning("agent_loop.tool_forbidden", tool=call.name, call_id=call.id)
            return _refusal(call, "this tool is not allowed")

        if policy.is_gated:
            state = await self._confirm(key, call)
            if not state.is_approved:
                log.info("agent_loop.tool_refused", tool=call.name, state=state.value)
                return _refusal(call, _REFUSALS.get(state, state.value))

        dispatched.add(call.id)
        skill_result = await self._bus.dispatch(
            SkillCall(id=call.id, skill_name=call.name, arguments=dict(call.arguments))
        )
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            content=skill_result.to_llm_content(),
            is_error=skill_result.is_error,
        )

    async def _confirm(self, key: str, call: ToolCall) -> ConfirmationState:
        request = ConfirmationRequest.for_tool_call(call, key, timeout=self._confirm_timeout)
        request_id = await self._confirmations.request(request)
        try:
            return await self._confirmations.await_decision(request_id)
        finally:
            # Iteration aborted while waiting: release the request
            if self._confirmations.state(request_id) is ConfirmationState.PENDING:
                self._confirmations.cancel(request_id, reason="turn aborted")

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _persist(self, key: str, message: Message) -> None:
        # A cancellation never leaves a half-recorded turn: the write lands,
        # then the cancellation propagates.
        write = asyncio.ensure_future(self._sessions.append_turn(key, message))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            await write
            raise

    def _system_preamble(self) -> str:
        return self._preamble if self._preamble is not None else default_preamble(self._agent_name)

    def __repr__(self) -> str:
        return f"<AgentLoop llm={self._llm!r} max_iter={self._max_iter} active={len(self._active)}>"


def _refusal(call: ToolCall, reason: str) -> ToolResult:
    return ToolResult(
        tool_call_id=call.id,
        name=call.name,
        content=f"Tool '{call.name}' was not executed: {reason}.",
        is_error=True,
    )


def _unique_ids(calls: list[ToolCall]) -> list[ToolCall]:
    """
    Give every call in one response a distinct, non-empty id so each tool
    result pairs with exactly one call. Some providers derive ids from the
    function name or leave them blank.
    """
    seen: set[str] = set()
    out: list[ToolCall] = []
    for call in calls:
        if not call.id or call.id in seen:
            base = call.id or call.name
            call = call.model_copy(update={"id": f"{base}_{uuid.uuid4().hex[:8]}"})
            log.debug("agent_loop.tool_call_id_rewritten", tool=call.name, call_id=call.id)
        seen.add(call.id)
        out.append(call)
    return out
