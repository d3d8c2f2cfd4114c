"""
skills/types.py — Skill System Data Contracts

Dataclasses shared across the skill layer. Nothing in skills/ imports from
agent/ — the confirmation gate lives in the agent loop, not here.

  - SkillManifest:   static metadata every skill must declare
  - SkillCall:       immutable snapshot of one invocation
  - SkillResult:     typed result returned from every skill execution
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from brain.types import ToolSchema


# ─────────────────────────────────────────────────────────────────────────────
# SkillManifest: static, declared as ClassVar on every skill
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SkillManifest:
    """
    Static metadata for a skill. Declared as a ClassVar on SkillBase subclasses.

    Rules:
      - name must be snake_case and unique within a registry.
      - parameters is a JSON Schema dict that the SkillBus and the model use.
      - timeout_seconds: how long the skill may run before being cancelled.
    """
    name: str
    description: str
    version: str = "1.0.0"
    category: str = "general"
    parameters: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    timeout_seconds: float = 30.0
    enabled: bool = True

    def to_tool_schema(self) -> ToolSchema:
        """Return the provider-agnostic schema handed to the model client."""
        return ToolSchema(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


# ─────────────────────────────────────────────────────────────────────────────
# SkillCall: immutable invocation snapshot
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SkillCall:
    """
    An immutable snapshot of one skill invocation from the model.

    Created once by the agent loop from a ToolCall and executed unchanged.
    """
    id: str                               # matches the model's tool_call_id
    skill_name: str
    arguments: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.monotonic)


# ─────────────────────────────────────────────────────────────────────────────
# SkillResult: typed result from every execution
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SkillResult:
    """
    The result of a skill execution.

    Rules:
      - success=True means the skill ran and produced output.
      - success=False means it failed; error and error_type describe why.
      - Skills must NEVER raise — they return SkillResult.fail() instead.
      - output is what the model receives as the tool result.
    """
    success: bool
    output: Any                            # any JSON-serialisable value
    skill_name: str
    skill_call_id: str
    error: Optional[str] = None
    error_type: Optional[str] = None      # exception class name
    duration_ms: float = 0.0
    metadata: dict = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        skill_name: str,
        skill_call_id: str,
        output: Any,
        duration_ms: float = 0.0,
        metadata: Optional[dict] = None,
    ) -> "SkillResult":
        return cls(
            success=True,
            output=output,
            skill_name=skill_name,
            skill_call_id=skill_call_id,
            duration_ms=duration_ms,
            metadata=metadata or {},
        )

    @classmethod
    def fail(
        cls,
        skill_name: str,
        skill_call_id: str,
        error: str,
        error_type: str = "SkillError",
        duration_ms: float = 0.0,
    ) -> "SkillResult":
        return cls(
            success=False,
            output=None,
            skill_name=skill_name,
            skill_call_id=skill_call_id,
            error=error,
            error_type=error_type,
            duration_ms=duration_ms,
        )

    def to_llm_content(self) -> str:
        """Return the string the model sees as the tool result."""
        if not self.success:
            return f"ERROR ({self.error_type}): {self.error}"
        if isinstance(self.output, str):
            return self.output
        try:
            return json.dumps(self.output, indent=2, default=str)
        except (TypeError, ValueError):
            return str(self.output)

    @property
    def is_error(self) -> bool:
        return not self.success
