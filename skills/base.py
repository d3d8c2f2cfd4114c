"""
skills/base.py — SkillBase Abstract Base Class

Every Parley skill subclasses SkillBase and declares a ClassVar manifest.

Rules for skill authors:
  1. Declare `manifest: ClassVar[SkillManifest]` — static, not per-instance.
  2. Implement `async execute(**kwargs)` returning a SkillResult or a plain
     JSON-serialisable value (the bus wraps plain values).
  3. Override validate() for argument-level pre-checks beyond JSON Schema.
  4. Skills are stateless — do not store call-specific state on self.

Example:
    class BookFlightSkill(SkillBase):
        manifest = SkillManifest(
            name="book_flight",
            description="Book a flight to a destination.",
            parameters={
                "type": "object",
                "properties": {"dest": {"type": "string"}},
                "required": ["dest"],
            },
        )

        async def execute(self, dest: str) -> dict:
            return {"booking_id": "BK-1", "dest": dest}

Plain async functions can be registered with SkillRegistry.register() instead;
they are wrapped in a FunctionSkill.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, ClassVar

from skills.types import SkillManifest


class SkillBase(ABC):
    """
    Abstract base class for all Parley skills.

    Subclass this, declare a `manifest` ClassVar, and implement `execute()`.
    """

    manifest: ClassVar[SkillManifest]

    async def validate(self, **kwargs) -> None:
        """
        Optional pre-execution argument validation beyond JSON Schema.

        Raise SkillValidationError with a clear message if arguments are
        semantically invalid. The SkillBus calls this before execute().
        """

    @abstractmethod
    async def execute(self, **kwargs) -> Any:
        """Execute the skill and return a SkillResult or a plain value."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} skill={self.manifest.name}>"


class FunctionSkill(SkillBase):
    """Adapter that exposes a plain async function as a skill."""

    def __init__(self, manifest: SkillManifest, fn: Callable[..., Awaitable[Any]]) -> None:
        # Instance attribute shadows the ClassVar; each wrapped function has its own.
        self.manifest = manifest  # type: ignore[misc]
        self._fn = fn

    async def execute(self, **kwargs) -> Any:
        return await self._fn(**kwargs)
