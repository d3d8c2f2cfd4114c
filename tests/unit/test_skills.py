"""
tests/unit/test_skills.py — SkillRegistry, SkillBus, SkillResult

Covers:
  - SkillRegistry:  register, duplicates, register_function, freeze, lookup
  - SkillBus:       unknown / disabled skill, argument validation,
                    validate() hook, timeout, exception capture,
                    result normalisation and truncation, cancellation
  - SkillResult:    to_llm_content rendering
"""

from __future__ import annotations

import asyncio
from typing import ClassVar

import pytest

from exceptions import RegistryFrozenError, SkillNotFoundError, SkillValidationError
from skills.base import FunctionSkill, SkillBase
from skills.bus import SkillBus
from skills.registry import SkillRegistry
from skills.types import SkillCall, SkillManifest, SkillResult


class _BookFlight(SkillBase):
    manifest: ClassVar[SkillManifest] = SkillManifest(
        name="book_flight",
        description="Book a flight.",
        category="travel",
        parameters={
            "type": "object",
            "properties": {
                "destination": {"type": "string"},
                "passengers": {"type": "integer"},
                "cabin": {"type": "string", "enum": ["economy", "business"]},
            },
            "required": ["destination"],
        },
    )

    async def validate(self, destination: str, **kwargs) -> None:
        if destination == "Atlantis":
            raise SkillValidationError("Atlantis has no airport")

    async def execute(self, destination: str, passengers: int = 1, cabin: str = "economy"):
        return {"booking_id": "BK-1", "destination": destination, "passengers": passengers}


class _Disabled(SkillBase):
    manifest: ClassVar[SkillManifest] = SkillManifest(
        name="disabled_skill", description="Off.", enabled=False,
    )

    async def execute(self, **kwargs):
        return "should not run"


def _manifest(name: str, **kwargs) -> SkillManifest:
    return SkillManifest(name=name, description=f"{name} skill", **kwargs)


def _call(name: str, call_id: str = "call_1", **arguments) -> SkillCall:
    return SkillCall(id=call_id, skill_name=name, arguments=arguments)


def _bus(*skills: SkillBase, **kwargs) -> SkillBus:
    registry = SkillRegistry()
    for s in skills:
        registry.register(s)
    registry.freeze()
    return SkillBus(registry, **kwargs)


# ─────────────────────────────────────────────────────────────────────────────
# SkillRegistry
# ─────────────────────────────────────────────────────────────────────────────

class TestSkillRegistry:
    def test_register_and_get(self):
        registry = SkillRegistry()
        skill = registry.register(_BookFlight())
        assert registry.get("book_flight") is skill
        assert "book_flight" in registry
        assert len(registry) == 1
        assert registry.get_manifest("book_flight").category == "travel"

    def test_duplicate_name_rejected(self):
        registry = SkillRegistry()
        registry.register(_BookFlight())
        with pytest.raises(ValueError, match="already registered"):
            registry.register(_BookFlight())

    def test_get_unknown_raises(self):
        with pytest.raises(SkillNotFoundError):
            SkillRegistry().get("nope")
        assert SkillRegistry().get_or_none("nope") is None

    def test_register_function_decorator(self):
        registry = SkillRegistry()

        @registry.register_function(
            description="Echo text.",
            parameters={"type": "object", "properties": {"text": {"type": "string"}}},
        )
        async def echo(text: str) -> str:
            return text

        skill = registry.get("echo")
        assert isinstance(skill, FunctionSkill)
        assert skill.manifest.description == "Echo text."
        assert echo.__name__ == "echo"

    def test_freeze_blocks_writes(self):
        registry = SkillRegistry()
        registry.register(_BookFlight())
        registry.freeze()
        assert registry.frozen
        with pytest.raises(RegistryFrozenError):
            registry.register(_Disabled())
        with pytest.raises(RegistryFrozenError):
            registry.unregister("book_flight")
        assert registry.is_registered("book_flight")

    def test_unregister_before_freeze(self):
        registry = SkillRegistry()
        registry.register(_BookFlight())
        registry.unregister("book_flight")
        assert not registry.is_registered("book_flight")

    def test_tool_schemas_skip_disabled(self):
        registry = SkillRegistry()
        registry.register(_BookFlight())
        registry.register(_Disabled())
        schemas = registry.to_tool_schemas()
        assert [s.name for s in schemas] == ["book_flight"]
        assert schemas[0].parameters["required"] == ["destination"]
        assert registry.list_names(enabled_only=False) == ["book_flight", "disabled_skill"]


# ─────────────────────────────────────────────────────────────────────────────
# SkillBus
# ─────────────────────────────────────────────────────────────────────────────

class TestSkillBus:
    @pytest.mark.asyncio
    async def test_success_wraps_plain_value(self):
        result = await _bus(_BookFlight()).dispatch(_call("book_flight", destination="NYC"))
        assert result.success
        assert result.skill_call_id == "call_1"
        assert result.output["destination"] == "NYC"
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_unknown_skill(self):
        result = await _bus(_BookFlight()).dispatch(_call("teleport"))
        assert not result.success
        assert result.error_type == "SkillNotFoundError"
        assert "book_flight" in result.error

    @pytest.mark.asyncio
    async def test_disabled_skill(self):
        result = await _bus(_Disabled()).dispatch(_call("disabled_skill"))
        assert result.error_type == "SkillDisabledError"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arguments,fragment", [
        ({}, "Missing required field: 'destination'"),
        ({"destination": 5}, "expected string"),
        ({"destination": "NYC", "passengers": True}, "got boolean"),
        ({"destination": "NYC", "passengers": "two"}, "expected integer"),
        ({"destination": "NYC", "cabin": "first"}, "is not one of"),
    ])
    async def test_argument_validation(self, arguments, fragment):
        result = await _bus(_BookFlight()).dispatch(
            SkillCall(id="c", skill_name="book_flight", arguments=arguments)
        )
        assert result.error_type == "SkillValidationError"
        assert fragment in result.error

    @pytest.mark.asyncio
    async def test_validate_hook(self):
        result = await _bus(_BookFlight()).dispatch(_call("book_flight", destination="Atlantis"))
        assert result.error_type == "SkillValidationError"
        assert "no airport" in result.error

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow():
            await asyncio.sleep(10)

        skill = FunctionSkill(_manifest("slow", timeout_seconds=0.01), slow)
        result = await _bus(skill).dispatch(_call("slow"))
        assert result.error_type == "SkillTimeoutError"

    @pytest.mark.asyncio
    async def test_unexpected_exception_captured(self):
        async def broken():
            raise KeyError("boom")

        result = await _bus(FunctionSkill(_manifest("broken"), broken)).dispatch(_call("broken"))
        assert not result.success
        assert result.error_type == "KeyError"
        assert result.error.startswith("KeyError")

    @pytest.mark.asyncio
    async def test_failed_skill_result_passed_through(self):
        async def refuses():
            return SkillResult.fail("refuses", "call_1", "nope", error_type="Custom")

        result = await _bus(FunctionSkill(_manifest("refuses"), refuses)).dispatch(_call("refuses"))
        assert result.error_type == "Custom"

    @pytest.mark.asyncio
    async def test_long_output_truncated(self):
        async def chatty():
            return "x" * 50

        bus = _bus(FunctionSkill(_manifest("chatty"), chatty), max_result_chars=10)
        result = await bus.dispatch(_call("chatty"))
        assert result.success
        assert result.output.startswith("x" * 10)
        assert "40 chars omitted" in result.output
        assert result.metadata["truncated"] is True

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        started = asyncio.Event()

        async def waits():
            started.set()
            await asyncio.sleep(10)

        bus = _bus(FunctionSkill(_manifest("waits"), waits))
        task = asyncio.create_task(bus.dispatch(_call("waits")))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


# ─────────────────────────────────────────────────────────────────────────────
# SkillResult
# ─────────────────────────────────────────────────────────────────────────────

class TestSkillResult:
    def test_error_content(self):
        result = SkillResult.fail("x", "c", "went wrong", error_type="SkillTimeoutError")
        assert result.is_error
        assert result.to_llm_content() == "ERROR (SkillTimeoutError): went wrong"

    def test_dict_content_is_json(self):
        result = SkillResult.ok("x", "c", {"a": 1})
        assert '"a": 1' in result.to_llm_content()

    def test_string_content_verbatim(self):
        assert SkillResult.ok("x", "c", "plain").to_llm_content() == "plain"
