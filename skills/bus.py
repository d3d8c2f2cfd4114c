"""
skills/bus.py — Skill Bus

Routes SkillCall objects from the agent loop through the execution pipeline:
  1. Registry lookup  — is the skill registered and enabled?
  2. Arg validation   — JSON Schema required-fields + type check
  3. Pre-validation   — SkillBase.validate() for semantic checks
  4. Execution        — async with timeout, all exceptions caught
  5. Result norm      — SkillResult always returned, never raises

The confirmation gate is NOT here. By the time a call reaches the bus the
agent loop has already resolved its tool policy and, if needed, obtained an
approval. Cancellation always propagates.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

from exceptions import ParleyError
from observability.logger import get_logger
from skills.registry import SkillRegistry
from skills.types import SkillCall, SkillResult

log = get_logger(__name__)

# Max output size fed back to the model
MAX_RESULT_CHARS = 8_000

# Default timeout when the manifest doesn't specify one
DEFAULT_TIMEOUT_SECONDS = 30.0


class SkillBus:
    """
    Central dispatcher for skill invocations.

    Usage:
        bus = SkillBus(registry)
        result = await bus.dispatch(SkillCall(id="call_1", skill_name="echo",
                                              arguments={"text": "hi"}))
    """

    def __init__(
        self,
        registry: SkillRegistry,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_result_chars: int = MAX_RESULT_CHARS,
    ) -> None:
        self._registry = registry
        self._default_timeout = default_timeout_seconds
        self._max_result_chars = max_result_chars

    @property
    def registry(self) -> SkillRegistry:
        return self._registry

    # ── Primary dispatch ──────────────────────────────────────────────────────

    async def dispatch(self, call: SkillCall) -> SkillResult:
        """
        Dispatch a SkillCall through the full pipeline.

        Returns:
            SkillResult — always. Never raises, except CancelledError.
        """
        start = time.monotonic()
        log.info("skill_bus.dispatch", skill=call.skill_name, call_id=call.id)

        # ── 1. Registry lookup ─────────────────────────────────────────────
        skill = self._registry.get_or_none(call.skill_name)
        if skill is None:
            return SkillResult.fail(
                skill_name=call.skill_name,
                skill_call_id=call.id,
                error=(
                    f"Skill '{call.skill_name}' is not registered. "
                    f"Available: {sorted(self._registry.list_names())}"
                ),
                error_type="SkillNotFoundError",
            )

        if not skill.manifest.enabled:
            return SkillResult.fail(
                skill_name=call.skill_name,
                skill_call_id=call.id,
                error=f"Skill '{call.skill_name}' is disabled.",
                error_type="SkillDisabledError",
            )

        # ── 2. JSON Schema argument validation ────────────────────────────
        arg_error = _validate_args(call.arguments, skill.manifest.parameters)
        if arg_error:
            log.warning("skill_bus.invalid_args", skill=call.skill_name, error=arg_error)
            return SkillResult.fail(
                skill_name=call.skill_name,
                skill_call_id=call.id,
                error=f"Invalid arguments: {arg_error}",
                error_type="SkillValidationError",
                duration_ms=_ms(start),
            )

        # ── 3. Semantic pre-validation (skill-specific) ───────────────────
        try:
            await skill.validate(**call.arguments)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return SkillResult.fail(
                skill_name=call.skill_name,
                skill_call_id=call.id,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=_ms(start),
            )

        # ── 4. Execute ────────────────────────────────────────────────────
        timeout = skill.manifest.timeout_seconds or self._default_timeout
        try:
            raw = await asyncio.wait_for(skill.execute(**call.arguments), timeout=timeout)
        except asyncio.TimeoutError:
            duration = _ms(start)
            log.warning(
                "skill_bus.timeout",
                skill=call.skill_name, timeout=timeout, duration_ms=duration,
            )
            return SkillResult.fail(
                skill_name=call.skill_name,
                skill_call_id=call.id,
                error=f"Skill timed out after {timeout}s",
                error_type="SkillTimeoutError",
                duration_ms=duration,
            )
        except asyncio.CancelledError:
            raise
        except ParleyError as e:
            duration = _ms(start)
            log.warning(
                "skill_bus.execution_error",
                skill=call.skill_name, error=str(e),
                error_type=type(e).__name__, duration_ms=duration,
            )
            return SkillResult.fail(
                skill_name=call.skill_name,
                skill_call_id=call.id,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=duration,
            )
        except Exception as e:
            duration = _ms(start)
            log.error(
                "skill_bus.unexpected_error",
                skill=call.skill_name, error=str(e),
                error_type=type(e).__name__, duration_ms=duration, exc_info=True,
            )
            return SkillResult.fail(
                skill_name=call.skill_name,
                skill_call_id=call.id,
                error=f"{type(e).__name__}: {e}",
                error_type=type(e).__name__,
                duration_ms=duration,
            )

        result = self._normalise(call, raw, _ms(start))
        log.info(
            "skill_bus.success" if result.success else "skill_bus.skill_failed",
            skill=call.skill_name,
            call_id=call.id,
            duration_ms=round(result.duration_ms, 1),
        )
        return result

    # ── Result normalisation ──────────────────────────────────────────────────

    def _normalise(self, call: SkillCall, raw: Any, duration: float) -> SkillResult:
        # A failed SkillResult from the skill is honoured as-is
        if isinstance(raw, SkillResult) and not raw.success:
            return raw

        if isinstance(raw, SkillResult):
            output, metadata = raw.output, dict(raw.metadata)
        else:
            output, metadata = raw, {}

        if isinstance(output, str) and len(output) > self._max_result_chars:
            omitted = len(output) - self._max_result_chars
            output = (
                output[: self._max_result_chars]
                + f"\n\n[Output truncated — {omitted} chars omitted]"
            )
            metadata["truncated"] = True

        return SkillResult.ok(
            skill_name=call.skill_name,
            skill_call_id=call.id,
            output=output,
            duration_ms=duration,
            metadata=metadata,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _ms(start: float) -> float:
    return (time.monotonic() - start) * 1000


_TYPE_MAP: dict[str, type | tuple] = {
    "string":  str,
    "integer": int,
    "number":  (int, float),
    "boolean": bool,
    "array":   list,
    "object":  dict,
}


def _validate_args(arguments: dict, schema: dict) -> Optional[str]:
    """
    Validate arguments against a JSON Schema dict.
    Returns an error string or None if valid.
    Checks: required fields present + declared types match.
    """
    if not isinstance(arguments, dict):
        return f"arguments must be an object, got {type(arguments).__name__}"

    required = schema.get("required", [])
    properties = schema.get("properties", {})

    for name in required:
        if name not in arguments:
            return f"Missing required field: '{name}'"

    for name, value in arguments.items():
        prop = properties.get(name)
        if prop is None:
            continue
        json_type = prop.get("type")
        expected = _TYPE_MAP.get(json_type) if json_type else None
        if expected is None:
            continue
        if json_type in ("integer", "number") and isinstance(value, bool):
            return f"Field '{name}': expected {json_type}, got boolean"
        if not isinstance(value, expected):
            return f"Field '{name}': expected {json_type}, got {type(value).__name__}"
        enum = prop.get("enum")
        if enum is not None and value not in enum:
            return f"Field '{name}': {value!r} is not one of {enum}"

    return None
