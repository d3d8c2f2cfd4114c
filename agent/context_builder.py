"""
agent/context_builder.py — Model Context Builder

Assembles the ordered prompt sent to the model each turn:
    System preamble → Conversation history (oldest first) → Incoming message

History is grouped into units before trimming. A plain message is a unit of
one; an assistant message with tool_calls plus every matching tool message
is one unit and is kept or dropped as a whole, so the model never sees a
tool call without its result or a result without its call.

Budget: optional max_turns (history messages) and max_chars (cost units,
characters by default). The oldest unit goes first. The preamble and the
incoming message are never dropped.
"""

from __future__ import annotations

import json
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from brain.types import Message, Role
from exceptions import ToolPairingError
from observability.logger import get_logger
from session.models import Session

log = get_logger(__name__)

CostFn = Callable[[Message], int]

_SYSTEM_TEMPLATE = """\
You are {agent_name}, a conversational assistant that can act through tools.

## Guidelines
- Think before acting. Use a tool only when it helps answer the user.
- Some tools require the user's confirmation. If a call is refused, do not
  retry it unchanged; explain what you would have done instead.
- Report tool errors honestly — never fabricate results.
- Keep responses concise and use markdown where it aids readability.

## Current UTC Time
{utc_time}"""


def default_preamble(agent_name: str = "Parley", extra: Optional[str] = None) -> str:
    """Render the default system prompt."""
    prompt = _SYSTEM_TEMPLATE.format(
        agent_name=agent_name,
        utc_time=time.strftime("%Y-%m-%d %H:%M UTC", time.gmtime()),
    )
    if extra:
        prompt += f"\n\n{extra.strip()}"
    return prompt


def default_cost(message: Message) -> int:
    """Characters of content plus serialized tool-call arguments."""
    cost = len(message.content or "")
    for call in message.tool_calls or []:
        cost += len(call.name) + len(json.dumps(call.arguments, default=str))
    return cost


@dataclass
class _Unit:
    messages: list[Message] = field(default_factory=list)
    awaiting: Counter = field(default_factory=Counter)    # call id -> results still owed

    @property
    def complete(self) -> bool:
        return not +self.awaiting


class ContextBuilder:
    """Turns a session plus an incoming message into a model-ready prompt."""

    def __init__(
        self,
        max_turns: Optional[int] = None,
        max_chars: Optional[int] = None,
        cost_fn: CostFn = default_cost,
    ) -> None:
        if max_turns is not None and max_turns < 0:
            raise ValueError("max_turns must be >= 0")
        if max_chars is not None and max_chars < 0:
            raise ValueError("max_chars must be >= 0")
        self.max_turns = max_turns
        self.max_chars = max_chars
        self._cost = cost_fn

    def build(
        self,
        session: Session,
        incoming: Union[Message, str],
        system_preamble: Optional[str] = None,
    ) -> list[Message]:
        """
        Build the prompt for this turn.

        Raises:
            ToolPairingError: history holds a tool result with no matching call.
        """
        if isinstance(incoming, str):
            incoming = Message.user(incoming)

        units = self._group(session)
        units = self._trim(units, incoming, system_preamble, session.key)

        messages: list[Message] = []
        if system_preamble:
            messages.append(Message.system(system_preamble))
        for unit in units:
            messages.extend(unit.messages)
        messages.append(incoming)

        log.debug(
            "context_builder.built",
            session_key=session.key,
            total_messages=len(messages),
            history_units=len(units),
        )
        return messages

    # ── Grouping ──────────────────────────────────────────────────────────────

    def _group(self, session: Session) -> list[_Unit]:
        units: list[_Unit] = []
        open_unit: Optional[_Unit] = None

        def close_open() -> None:
            nonlocal open_unit
            if open_unit is None:
                return
            if open_unit.complete:
                units.append(open_unit)
            else:
                log.warning(
                    "context_builder.incomplete_tool_unit_omitted",
                    session_key=session.key,
                    missing=sorted((+open_unit.awaiting).keys()),
                )
            open_unit = None

        for message in session.turns:
            if message.role == Role.TOOL:
                call_id = message.tool_call_id
                if open_unit is None or open_unit.awaiting[call_id] <= 0:
                    raise ToolPairingError(call_id or "<missing>")
                open_unit.messages.append(message)
                open_unit.awaiting[call_id] -= 1
                continue

            close_open()
            if message.has_tool_calls:
                open_unit = _Unit(
                    messages=[message],
                    awaiting=Counter(c.id for c in message.tool_calls or []),
                )
            else:
                units.append(_Unit(messages=[message]))

        close_open()
        return units

    # ── Trimming ──────────────────────────────────────────────────────────────

    def _trim(
        self,
        units: list[_Unit],
        incoming: Message,
        system_preamble: Optional[str],
        key: str,
    ) -> list[_Unit]:
        if self.max_turns is None and self.max_chars is None:
            return units

        fixed = self._cost(incoming)
        if system_preamble:
            fixed += self._cost(Message.system(system_preamble))

        costs = [sum(self._cost(m) for m in u.messages) for u in units]
        sizes = [len(u.messages) for u in units]
        total_cost = fixed + sum(costs)
        total_turns = sum(sizes)

        start = 0
        while start < len(units) and (
            (self.max_turns is not None and total_turns > self.max_turns)
            or (self.max_chars is not None and total_cost > self.max_chars)
        ):
            total_cost -= costs[start]
            total_turns -= sizes[start]
            start += 1

        if start:
            log.debug(
                "context_builder.history_trimmed",
                session_key=key,
                dropped_units=start,
                kept_units=len(units) - start,
            )
        if self.max_chars is not None and fixed > self.max_chars:
            log.warning(
                "context_builder.fixed_parts_over_budget",
                session_key=key,
                cost=fixed,
                max_chars=self.max_chars,
            )
        return units[start:]
