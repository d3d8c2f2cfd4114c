"""
exceptions.py — Parley Unified Error Hierarchy

All Parley-specific exceptions live here. Every layer of the stack
raises typed subclasses of ParleyError — never bare Exception.

Import from here, not from individual modules:
    from exceptions import StorageError, ConfirmationStateError

Hierarchy:
    ParleyError
    ├── StorageError
    │   ├── StorageUnavailableError
    │   └── CorruptSessionError
    ├── ProtocolError
    │   ├── ToolPairingError
    │   ├── UnknownConfirmationError
    │   └── ConfirmationStateError
    ├── SkillError
    │   ├── SkillNotFoundError
    │   ├── SkillTimeoutError
    │   ├── SkillValidationError
    │   └── RegistryFrozenError
    ├── ChannelError
    │   ├── ChannelDeliveryError
    │   └── ChannelClosedError
    └── LLMError
        ├── LLMConnectionError
        ├── LLMRateLimitError
        ├── LLMContextError
        └── LLMInvalidRequestError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class ParleyError(Exception):
    """Base class for all Parley exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Storage layer
# ─────────────────────────────────────────────────────────────────────────────

class StorageError(ParleyError):
    """
    Base for session storage failures.

    Never raised for a missing session — a missing session is None.
    """

    def __init__(self, key: str, message: str = "") -> None:
        self.key = key
        super().__init__(message or f"Storage failure for session '{key}'")


class StorageUnavailableError(StorageError):
    """The backend could not be read or written (I/O failure, permissions)."""


class CorruptSessionError(StorageError):
    """A stored record exists but cannot be decoded into a Session."""


# ─────────────────────────────────────────────────────────────────────────────
# Protocol layer: integration/programming errors, rejected at the call site
# ─────────────────────────────────────────────────────────────────────────────

class ProtocolError(ParleyError):
    """Base for contract violations between components."""


class ToolPairingError(ProtocolError):
    """A tool result has no matching assistant tool call."""

    def __init__(self, tool_call_id: str, message: str = "") -> None:
        self.tool_call_id = tool_call_id
        super().__init__(
            message or f"Tool result '{tool_call_id}' has no matching assistant tool call."
        )


class UnknownConfirmationError(ProtocolError):
    """No confirmation request with this id was ever registered."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Unknown confirmation request '{request_id}'")


class ConfirmationStateError(ProtocolError):
    """A response or cancellation arrived for a request that is no longer pending."""

    def __init__(self, request_id: str, state: str) -> None:
        self.request_id = request_id
        self.state = state
        super().__init__(
            f"Confirmation request '{request_id}' is already {state}; "
            f"only pending requests accept a decision."
        )


# ─────────────────────────────────────────────────────────────────────────────
# Skill layer
# ─────────────────────────────────────────────────────────────────────────────

class SkillError(ParleyError):
    """Base for all skill-related errors."""


class SkillNotFoundError(SkillError):
    """Requested skill is not registered in the SkillRegistry."""


class SkillTimeoutError(SkillError):
    """Skill execution exceeded its configured timeout_seconds."""


class SkillValidationError(SkillError):
    """Skill arguments failed validation (JSON Schema or semantic checks)."""


class RegistryFrozenError(SkillError):
    """A registration was attempted after the registry was frozen at startup."""


# ─────────────────────────────────────────────────────────────────────────────
# Channel layer
# ─────────────────────────────────────────────────────────────────────────────

class ChannelError(ParleyError):
    """Base for channel transport errors."""


class ChannelDeliveryError(ChannelError):
    """An outbound message could not be delivered."""


class ChannelClosedError(ChannelError):
    """The channel no longer accepts messages."""


# ─────────────────────────────────────────────────────────────────────────────
# LLM layer
# ─────────────────────────────────────────────────────────────────────────────

class LLMError(ParleyError):
    """Base for model client errors."""


class LLMConnectionError(LLMError):
    """Network / connection failure to the model backend."""


class LLMRateLimitError(LLMError):
    """Model backend rate limit hit."""

    def __init__(self, message: str = "", retry_after: Optional[float] = None) -> None:
        self.retry_after = retry_after
        super().__init__(message or "Rate limited by model backend")


class LLMContextError(LLMError):
    """Input too long for the model context window."""


class LLMInvalidRequestError(LLMError):
    """Malformed request rejected by the model backend."""


__all__ = [
    "ParleyError",
    # Storage
    "StorageError",
    "StorageUnavailableError",
    "CorruptSessionError",
    # Protocol
    "ProtocolError",
    "ToolPairingError",
    "UnknownConfirmationError",
    "ConfirmationStateError",
    # Skill
    "SkillError",
    "SkillNotFoundError",
    "SkillTimeoutError",
    "SkillValidationError",
    "RegistryFrozenError",
    # Channel
    "ChannelError",
    "ChannelDeliveryError",
    "ChannelClosedError",
    # LLM
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "LLMContextError",
    "LLMInvalidRequestError",
]
