"""
agent/ — Parley Agent Core

Public API:
    from agent import AgentLoop, ConfirmationManager, ContextBuilder

Component overview:
    ContextBuilder       Assembles the model prompt from preamble + history + message
    ConfirmationManager  Brokers approve/deny decisions for gated tool calls
    ToolPolicies         Per-tool auto / require_confirmation / forbidden
    AgentLoop            Central cycle: prompt → model → tools → persist → reply
"""

from agent.confirmation import (
    AutoApproveHandler,
    AutoDenyHandler,
    ChatConfirmationHandler,
    CliConfirmationHandler,
    ConfirmationHandler,
    ConfirmationManager,
    ConfirmationRequest,
    ConfirmationResponse,
    ConfirmationState,
    Decision,
    HandlerKind,
    build_handler,
)
from agent.context_builder import ContextBuilder, default_preamble
from agent.loop import AgentLoop, TurnResult, TurnStatus
from agent.policy import ToolPolicies, ToolPolicy

__all__ = [
    "AgentLoop",
    "TurnResult",
    "TurnStatus",
    "ContextBuilder",
    "default_preamble",
    "ConfirmationManager",
    "ConfirmationRequest",
    "ConfirmationResponse",
    "ConfirmationState",
    "ConfirmationHandler",
    "AutoApproveHandler",
    "AutoDenyHandler",
    "CliConfirmationHandler",
    "ChatConfirmationHandler",
    "Decision",
    "HandlerKind",
    "build_handler",
    "ToolPolicy",
    "ToolPolicies",
]
