"""
brain/__init__.py — Parley model-client contract
"""

from __future__ import annotations

from brain.llm_client import BaseLLMClient, ResilientLLMClient
from brain.types import (
    FinishReason,
    LLMConfig,
    LLMResponse,
    Message,
    Role,
    TokenUsage,
    ToolCall,
    ToolResult,
    ToolSchema,
)

__all__ = [
    "BaseLLMClient",
    "ResilientLLMClient",
    "Message",
    "LLMConfig",
    "LLMResponse",
    "ToolCall",
    "ToolResult",
    "ToolSchema",
    "TokenUsage",
    "Role",
    "FinishReason",
]
