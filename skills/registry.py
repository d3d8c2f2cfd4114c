"""
skills/registry.py — Skill Registry

Maps skill names to their SkillBase instances and manifests.
Built explicitly at startup, frozen, then handed by reference to the agent
loop. There is no global registry.

Usage:
    registry = SkillRegistry()
    registry.register(BookFlightSkill())

    @registry.register_function(description="Echo the input back.")
    async def echo(text: str) -> str:
        return text

    registry.freeze()
    skill = registry.get("book_flight")
    schemas = registry.to_tool_schemas()
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from brain.types import ToolSchema
from exceptions import RegistryFrozenError, SkillNotFoundError
from skills.base import FunctionSkill, SkillBase
from skills.types import SkillManifest


class SkillRegistry:
    """
    Central store for registered skills.

    Writes happen at startup only. After freeze() every write raises
    RegistryFrozenError; reads are safe from any task.
    """

    def __init__(self) -> None:
        self._skills: dict[str, SkillBase] = {}
        self._manifests: dict[str, SkillManifest] = {}
        self._frozen = False

    # ── Write (startup only) ──────────────────────────────────────────────────

    def register(self, skill_instance: SkillBase) -> SkillBase:
        """Register a skill instance. Raises ValueError on duplicate name."""
        self._check_writable()
        name = skill_instance.manifest.name
        if name in self._skills:
            raise ValueError(
                f"Skill '{name}' is already registered. "
                f"Skill names must be unique within a registry."
            )
        self._skills[name] = skill_instance
        self._manifests[name] = skill_instance.manifest
        return skill_instance

    def register_function(
        self,
        description: str,
        name: Optional[str] = None,
        parameters: Optional[dict] = None,
        timeout_seconds: float = 30.0,
        category: str = "general",
    ) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
        """Decorator registering a plain async function as a skill."""

        def decorator(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
            manifest = SkillManifest(
                name=name or fn.__name__,
                description=description,
                category=category,
                parameters=parameters or {"type": "object", "properties": {}, "required": []},
                timeout_seconds=timeout_seconds,
            )
            self.register(FunctionSkill(manifest, fn))
            return fn

        return decorator

    def unregister(self, name: str) -> None:
        """Remove a skill before the registry is frozen."""
        self._check_writable()
        self._skills.pop(name, None)
        self._manifests.pop(name, None)

    def freeze(self) -> None:
        """Make the registry read-only. Idempotent."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_writable(self) -> None:
        if self._frozen:
            raise RegistryFrozenError(
                "Skill registry is frozen; register skills before the agent loop starts."
            )

    # ── Read (runtime) ────────────────────────────────────────────────────────

    def get(self, name: str) -> SkillBase:
        """Return the skill instance. Raises SkillNotFoundError if not found."""
        if name not in self._skills:
            available = sorted(self._skills.keys())
            raise SkillNotFoundError(
                f"Skill '{name}' is not registered. "
                f"Available skills: {available}"
            )
        return self._skills[name]

    def get_or_none(self, name: str) -> Optional[SkillBase]:
        """Return the skill instance or None if not found."""
        return self._skills.get(name)

    def get_manifest(self, name: str) -> Optional[SkillManifest]:
        """Return the manifest for a skill, or None."""
        return self._manifests.get(name)

    def is_registered(self, name: str) -> bool:
        return name in self._skills

    def list_manifests(self, enabled_only: bool = True) -> list[SkillManifest]:
        manifests = list(self._manifests.values())
        if enabled_only:
            manifests = [m for m in manifests if m.enabled]
        return manifests

    def list_names(self, enabled_only: bool = True) -> list[str]:
        return [m.name for m in self.list_manifests(enabled_only)]

    def to_tool_schemas(self) -> list[ToolSchema]:
        """Return all enabled skills as provider-agnostic tool schemas."""
        return [m.to_tool_schema() for m in self.list_manifests(enabled_only=True)]

    def __contains__(self, name: object) -> bool:
        return name in self._skills

    def __len__(self) -> int:
        return len(self._skills)

    def __repr__(self) -> str:
        state = " frozen" if self._frozen else ""
        return f"<SkillRegistry{state} skills={sorted(self._skills.keys())}>"
