"""
brain/llm_client.py — Abstract Model Client + Retry/Failover

Concrete providers live outside this repository. Anything that can turn an
ordered prompt plus tool definitions into an LLMResponse subclasses
BaseLLMClient and implements generate().

  - _call_with_retry()   — exponential backoff on transient errors
  - ResilientLLMClient   — wraps any client with retry + optional failover.
    If the primary exhausts its retries, each fallback is tried in order.
    The agent loop only ever sees the final outcome: a response, or an
    LLMError once every attempt is spent.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from typing import Optional

from brain.types import LLMConfig, LLMResponse, Message, ToolSchema
from exceptions import (
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)
from observability.logger import get_logger

log = get_logger(__name__)


class BaseLLMClient(ABC):
    """
    Abstract base for model clients.

    Subclasses must implement:
      - generate()     -> call the model, return normalised LLMResponse
      - health_check() -> verify connectivity to the backend

    Class attributes:
      - supports_tools: set False on backends without function calling.
        The agent loop checks this before sending tool schemas.
    """

    supports_tools: bool = True

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
    ) -> LLMResponse:
        """Call the model and return a normalised response."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the backend is reachable."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


# ─────────────────────────────────────────────────────────────────────────────
# Retry logic
# ─────────────────────────────────────────────────────────────────────────────


async def _call_with_retry(
    client: BaseLLMClient,
    messages: list[Message],
    config: LLMConfig,
    tools: Optional[list[ToolSchema]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> LLMResponse:
    """
    Call client.generate() with exponential backoff on transient errors.

    Retries on LLMConnectionError and LLMRateLimitError. Context overflow,
    invalid requests and other LLMError subclasses propagate immediately.

    Backoff formula: min(base_delay * 2^attempt + jitter, max_delay).
    If LLMRateLimitError carries retry_after, that value is used instead.
    """
    last_error: Exception | None = None

    for attempt in range(max_attempts):
        try:
            return await client.generate(messages=messages, config=config, tools=tools)

        except (LLMConnectionError, LLMRateLimitError) as e:
            last_error = e

            if attempt == max_attempts - 1:
                break

            if isinstance(e, LLMRateLimitError) and e.retry_after:
                delay = min(e.retry_after, max_delay)
            else:
                jitter = random.uniform(0, 0.5) if base_delay > 0 else 0.0
                delay = min(base_delay * (2 ** attempt) + jitter, max_delay)

            log.warning(
                "llm.retrying",
                attempt=attempt + 1,
                max_attempts=max_attempts,
                delay_s=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)

    raise last_error  # type: ignore[misc]


# ─────────────────────────────────────────────────────────────────────────────
# ResilientLLMClient: retry + optional failover
# ─────────────────────────────────────────────────────────────────────────────


class ResilientLLMClient(BaseLLMClient):
    """
    Wraps a primary model client with automatic retry and optional failover.

    Behaviour:
      1. Calls the primary with up to max_attempts retries (exponential backoff).
      2. If the primary exhausts all retries, tries each fallback in order,
         each also with max_attempts retries.
      3. Permanent errors (context overflow, invalid request) skip failover.

    Usage:
        client = ResilientLLMClient(primary=my_client, fallbacks=[backup])
        response = await client.generate(messages, config)
    """

    def __init__(
        self,
        primary: BaseLLMClient,
        fallbacks: Optional[list[BaseLLMClient]] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        self._primary = primary
        self._fallbacks = fallbacks or []
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self.supports_tools = getattr(primary, "supports_tools", True)
        self._active_client: BaseLLMClient = primary

    @property
    def primary(self) -> BaseLLMClient:
        return self._primary

    async def generate(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
    ) -> LLMResponse:
        all_clients = [self._primary] + self._fallbacks
        last_error: Exception | None = None

        for i, client in enumerate(all_clients):
            if i > 0:
                log.warning(
                    "llm.failing_over",
                    from_client=repr(all_clients[i - 1]),
                    to_client=repr(client),
                    reason=str(last_error),
                )
                self.supports_tools = getattr(client, "supports_tools", True)

            try:
                result = await _call_with_retry(
                    client=client,
                    messages=messages,
                    config=config,
                    tools=tools,
                    max_attempts=self._max_attempts,
                    base_delay=self._base_delay,
                    max_delay=self._max_delay,
                )
                self._active_client = client
                return result
            except (LLMContextError, LLMInvalidRequestError):
                raise
            except LLMError as e:
                last_error = e
                log.error(
                    "llm.client_exhausted",
                    client=repr(client),
                    error=str(e),
                    will_try_fallback=i < len(all_clients) - 1,
                )

        raise LLMError(f"All model clients failed. Last error: {last_error}")

    async def health_check(self) -> bool:
        """Ping the currently-active client (may be a fallback after failover)."""
        return await self._active_client.health_check()

    def __repr__(self) -> str:
        n = len(self._fallbacks)
        suffix = f" + {n} fallback(s)" if n else ""
        return f"<ResilientLLMClient primary={self._primary!r}{suffix}>"
