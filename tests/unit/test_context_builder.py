"""
tests/unit/test_context_builder.py — ContextBuilder

Covers:
  - Ordering:   preamble → history → incoming, preamble optional
  - Pairing:    tool-call units kept whole, incomplete units omitted,
                orphan tool results rejected
  - Trimming:   max_turns / max_chars drop oldest units first, never split
                a unit, never drop preamble or incoming
  - Helpers:    default_preamble, default_cost, constructor validation
"""

from __future__ import annotations

import pytest

from agent.context_builder import ContextBuilder, default_cost, default_preamble
from brain.types import Message, Role, ToolCall, ToolResult
from exceptions import ToolPairingError
from session.models import Session


def _session(*turns: Message) -> Session:
    s = Session.new("cli:test")
    for t in turns:
        s = s.with_turn(t)
    return s


def _call(call_id: str, name: str = "lookup", **args) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=args)


def _result(call_id: str, content: str = "ok", name: str = "lookup") -> Message:
    return Message.tool_response(
        ToolResult(tool_call_id=call_id, name=name, content=content)
    )


def _contents(messages: list[Message]) -> list:
    return [m.content for m in messages]


# ─────────────────────────────────────────────────────────────────────────────
# Ordering
# ─────────────────────────────────────────────────────────────────────────────

class TestOrdering:
    def test_preamble_history_incoming(self):
        session = _session(Message.user("a"), Message.assistant("b"))
        prompt = ContextBuilder().build(session, "c", system_preamble="SYS")
        assert [m.role for m in prompt] == [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.USER]
        assert _contents(prompt) == ["SYS", "a", "b", "c"]

    def test_no_preamble(self):
        prompt = ContextBuilder().build(_session(), "hi")
        assert len(prompt) == 1
        assert prompt[0].role == Role.USER

    def test_incoming_message_object_passed_through(self):
        incoming = Message.user("exact")
        prompt = ContextBuilder().build(_session(), incoming)
        assert prompt[-1] is incoming

    def test_session_not_mutated(self):
        session = _session(Message.user("a"))
        ContextBuilder().build(session, "b", system_preamble="SYS")
        assert len(session) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Tool pairing
# ─────────────────────────────────────────────────────────────────────────────

class TestToolPairing:
    def test_complete_unit_kept(self):
        session = _session(
            Message.user("book it"),
            Message.assistant_tool_calls([_call("c1"), _call("c2")]),
            _result("c1"),
            _result("c2"),
            Message.assistant("done"),
        )
        prompt = ContextBuilder().build(session, "thanks")
        assert [m.role for m in prompt] == [
            Role.USER, Role.ASSISTANT, Role.TOOL, Role.TOOL, Role.ASSISTANT, Role.USER,
        ]

    def test_incomplete_unit_omitted(self):
        session = _session(
            Message.user("first"),
            Message.assistant_tool_calls([_call("c1"), _call("c2")]),
            _result("c1"),
            Message.user("second"),
        )
        prompt = ContextBuilder().build(session, "third")
        assert _contents(prompt) == ["first", "second", "third"]
        assert all(m.role != Role.TOOL for m in prompt)

    def test_trailing_incomplete_unit_omitted(self):
        session = _session(
            Message.user("first"),
            Message.assistant_tool_calls([_call("c1")]),
        )
        prompt = ContextBuilder().build(session, "again")
        assert _contents(prompt) == ["first", "again"]

    def test_orphan_tool_result_raises(self):
        session = _session(Message.user("hi"), _result("nobody"))
        with pytest.raises(ToolPairingError) as exc_info:
            ContextBuilder().build(session, "x")
        assert exc_info.value.tool_call_id == "nobody"

    def test_result_for_other_unit_raises(self):
        session = _session(
            Message.assistant_tool_calls([_call("c1")]),
            _result("c1"),
            Message.assistant_tool_calls([_call("c2")]),
            _result("c1"),
        )
        with pytest.raises(ToolPairingError):
            ContextBuilder().build(session, "x")

    def test_duplicate_result_raises(self):
        session = _session(
            Message.assistant_tool_calls([_call("c1")]),
            _result("c1"),
            _result("c1"),
        )
        with pytest.raises(ToolPairingError):
            ContextBuilder().build(session, "x")

    def test_repeated_call_id_pairs_each_result(self):
        session = _session(
            Message.user("twice"),
            Message.assistant_tool_calls([_call("echo"), _call("echo")]),
            _result("echo", "a"),
            _result("echo", "b"),
            Message.assistant("done"),
        )
        prompt = ContextBuilder().build(session, "again")
        assert _contents(prompt) == ["twice", None, "a", "b", "done", "again"]

    def test_repeated_call_id_extra_result_raises(self):
        session = _session(
            Message.assistant_tool_calls([_call("echo"), _call("echo")]),
            _result("echo"),
            _result("echo"),
            _result("echo"),
        )
        with pytest.raises(ToolPairingError):
            ContextBuilder().build(session, "x")

    def test_repeated_call_id_missing_result_omitted(self):
        session = _session(
            Message.user("first"),
            Message.assistant_tool_calls([_call("echo"), _call("echo")]),
            _result("echo"),
            Message.user("second"),
        )
        prompt = ContextBuilder().build(session, "third")
        assert _contents(prompt) == ["first", "second", "third"]


# ─────────────────────────────────────────────────────────────────────────────
# Trimming
# ─────────────────────────────────────────────────────────────────────────────

class TestTrimming:
    def test_max_turns_drops_oldest(self):
        session = _session(*(Message.user(f"m{i}") for i in range(6)))
        prompt = ContextBuilder(max_turns=2).build(session, "new", system_preamble="SYS")
        assert _contents(prompt) == ["SYS", "m4", "m5", "new"]

    def test_max_turns_zero_keeps_fixed_parts(self):
        session = _session(Message.user("old"))
        prompt = ContextBuilder(max_turns=0).build(session, "new", system_preamble="SYS")
        assert _contents(prompt) == ["SYS", "new"]

    def test_tool_unit_never_split(self):
        session = _session(
            Message.assistant_tool_calls([_call("c1")]),
            _result("c1"),
            Message.assistant("after"),
        )
        # Budget allows two history turns: the unit of two is older, so it
        # goes as a whole and only the last message stays.
        prompt = ContextBuilder(max_turns=2).build(session, "next")
        assert _contents(prompt) == ["after", "next"]
        prompt = ContextBuilder(max_turns=3).build(session, "next")
        assert [m.role for m in prompt] == [Role.ASSISTANT, Role.TOOL, Role.ASSISTANT, Role.USER]

    def test_max_chars_counts_fixed_parts(self):
        session = _session(Message.user("aaaa"), Message.user("bbbb"))
        # fixed = 3 (SYS) + 2 (in); budget 9 leaves 4 for history
        prompt = ContextBuilder(max_chars=9).build(session, "in", system_preamble="SYS")
        assert _contents(prompt) == ["SYS", "bbbb", "in"]

    def test_fixed_parts_over_budget_still_returned(self):
        session = _session(Message.user("history"))
        prompt = ContextBuilder(max_chars=1).build(
            session, "a long incoming message", system_preamble="SYS"
        )
        assert _contents(prompt) == ["SYS", "a long incoming message"]

    def test_custom_cost_fn(self):
        session = _session(*(Message.user(f"m{i}") for i in range(5)))
        builder = ContextBuilder(max_chars=3, cost_fn=lambda m: 1)
        prompt = builder.build(session, "new")
        assert _contents(prompt) == ["m3", "m4", "new"]

    def test_unbounded_keeps_everything(self):
        session = _session(*(Message.user(f"m{i}") for i in range(50)))
        assert len(ContextBuilder().build(session, "x")) == 51


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class TestHelpers:
    def test_default_preamble_mentions_agent(self):
        text = default_preamble("Ada", extra="Be brief.")
        assert "You are Ada" in text
        assert text.endswith("Be brief.")
        assert "UTC" in text

    def test_default_cost_includes_tool_arguments(self):
        plain = Message.assistant("abc")
        call = Message.assistant_tool_calls([_call("c1", name="go", to="x")])
        assert default_cost(plain) == 3
        assert default_cost(call) == len("go") + len('{"to": "x"}')

    def test_negative_budgets_rejected(self):
        with pytest.raises(ValueError):
            ContextBuilder(max_turns=-1)
        with pytest.raises(ValueError):
            ContextBuilder(max_chars=-1)
