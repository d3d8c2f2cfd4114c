"""
agent/policy.py — Tool Policies

Decides, per tool name, whether a model-requested call runs immediately,
needs a confirmation first, or is refused outright.

    policies = ToolPolicies(
        default=ToolPolicy.AUTO,
        overrides={"book_flight": ToolPolicy.REQUIRE_CONFIRMATION},
    )
    policies.resolve("book_flight")   # ToolPolicy.REQUIRE_CONFIRMATION
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Optional, Union


class ToolPolicy(str, Enum):
    AUTO = "auto"                                   # execute without asking
    REQUIRE_CONFIRMATION = "require_confirmation"   # gate behind a confirmation
    FORBIDDEN = "forbidden"                         # never execute

    @property
    def is_gated(self) -> bool:
        return self is ToolPolicy.REQUIRE_CONFIRMATION


class ToolPolicies:
    """Default policy plus per-tool overrides."""

    def __init__(
        self,
        default: Union[ToolPolicy, str] = ToolPolicy.AUTO,
        overrides: Optional[Mapping[str, Union[ToolPolicy, str]]] = None,
    ) -> None:
        self._default = ToolPolicy(default)
        self._overrides: dict[str, ToolPolicy] = {
            name: ToolPolicy(p) for name, p in (overrides or {}).items()
        }

    @property
    def default(self) -> ToolPolicy:
        return self._default

    def resolve(self, tool_name: str) -> ToolPolicy:
        return self._overrides.get(tool_name, self._default)

    def set(self, tool_name: str, policy: Union[ToolPolicy, str]) -> None:
        self._overrides[tool_name] = ToolPolicy(policy)

    def overrides(self) -> dict[str, ToolPolicy]:
        return dict(self._overrides)

    def __repr__(self) -> str:
        return f"<ToolPolicies default={self._default.value} overrides={len(self._overrides)}>"
