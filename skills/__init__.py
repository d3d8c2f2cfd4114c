"""
skills/__init__.py — Parley Skills System

Public interface for the skills module.

Skills are self-describing capabilities the model can invoke. The registry
is built at startup, frozen, and dispatched through the SkillBus.

Usage:
    from skills import SkillRegistry, SkillBus, SkillCall

    registry = SkillRegistry()
    registry.register(BookFlightSkill())
    registry.freeze()

    bus = SkillBus(registry)
    result = await bus.dispatch(SkillCall(id="call_1", skill_name="book_flight",
                                          arguments={"dest": "Tokyo"}))
"""

from skills.base import FunctionSkill, SkillBase
from skills.bus import SkillBus
from skills.registry import SkillRegistry
from skills.types import SkillCall, SkillManifest, SkillResult

__all__ = [
    "SkillRegistry",
    "SkillBus",
    "SkillBase",
    "FunctionSkill",
    # Types
    "SkillCall",
    "SkillResult",
    "SkillManifest",
]
