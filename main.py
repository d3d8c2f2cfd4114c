"""
main.py — Parley Entry Point

Usage:
    python main.py --llm mypkg.clients:make_client
    python main.py --llm mypkg.clients:make_client --skills mypkg.skills:register
    python main.py --llm ... --log-level DEBUG
    python main.py --llm ... --config path/to/config.yaml

--llm names a zero-argument factory returning a BaseLLMClient; concrete model
providers live outside this repository. Each --skills entry names a callable
that receives the SkillRegistry and registers skills on it before the
registry is frozen.

Library use:
    settings, log = bootstrap("config/config.yaml")
    runtime = build_runtime(settings, my_client, registry, channel)
    await serve(runtime, channel)
"""

from __future__ import annotations

# ─────────────────────────────────────────────────────────────────────────────
# Load environment variables FIRST
# ─────────────────────────────────────────────────────────────────────────────

from dotenv import load_dotenv
from pathlib import Path

ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)

# ─────────────────────────────────────────────────────────────────────────────
import argparse
import asyncio
import importlib
import sys
from dataclasses import dataclass
from typing import Any, Optional

from agent.confirmation import ConfirmationManager, HandlerKind, build_handler
from agent.context_builder import ContextBuilder
from agent.loop import AgentLoop
from agent.policy import ToolPolicies
from brain.llm_client import BaseLLMClient, ResilientLLMClient
from brain.types import LLMConfig
from channels.base import Channel
from config.settings import Settings
from session.manager import SessionManager
from session.storage import SessionStorage, build_storage
from skills.bus import SkillBus
from skills.registry import SkillRegistry


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="parley",
        description="Parley — agent orchestration core with gated tool confirmations",
    )
    parser.add_argument(
        "--llm",
        required=True,
        help="Model client factory as 'module:callable' returning a BaseLLMClient",
    )
    parser.add_argument(
        "--skills",
        action="append",
        default=[],
        help="Skill registration hook as 'module:callable(registry)'. Repeatable.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $PARLEY_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--chat-id",
        default="local",
        help="Conversation id for the terminal session (default: local)",
    )
    return parser.parse_args(argv)


def bootstrap(config_path: str | Path | None = None, log_level: Optional[str] = None):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from config.settings import ConfigError, load_settings
    from observability.logger import get_logger, setup_logging
    from pydantic import ValidationError

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(config_path)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    setup_logging(
        level=log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("parley.main")
    return settings, log


# ─────────────────────────────────────────────────────────────────────────────
# Wiring
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Runtime:
    """Everything build_runtime() wired together."""
    settings: Settings
    loop: AgentLoop
    sessions: SessionManager
    storage: SessionStorage
    confirmations: ConfirmationManager
    registry: SkillRegistry


def build_runtime(
    settings: Settings,
    llm_client: BaseLLMClient,
    registry: SkillRegistry,
    channel: Optional[Channel] = None,
) -> Runtime:
    """
    Wire storage, sessions, confirmations, context builder, skill bus and
    the agent loop from settings. Freezes the registry.

    A channel is required when confirmation.handler is 'chat'; the handler
    sends its prompts through channel.send, so the channel must deliver
    CONFIRMATION messages (raises ValueError otherwise).
    """
    if (
        channel is not None
        and not channel.delivers_confirmations
        and HandlerKind(settings.confirmation.handler) is HandlerKind.CHAT
    ):
        raise ValueError(
            f"confirmation.handler 'chat' needs a channel that shows confirmation "
            f"prompts, and channel '{channel.name}' does not. Use handler 'cli'."
        )

    storage = build_storage(settings.sessions.backend, settings.sessions_path)
    sessions = SessionManager(storage, cache_size=settings.sessions.cache_size)

    handler = build_handler(
        settings.confirmation.handler,
        send=channel.send if channel is not None else None,
    )
    confirmations = ConfirmationManager(handler)

    registry.freeze()

    if not isinstance(llm_client, ResilientLLMClient):
        retry = settings.llm.retry
        llm_client = ResilientLLMClient(
            primary=llm_client,
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
        )

    loop = AgentLoop(
        llm_client=llm_client,
        llm_config=LLMConfig(
            model=settings.llm.model,
            temperature=settings.llm.temperature,
            max_tokens=settings.llm.max_tokens,
            timeout_seconds=settings.llm.timeout_seconds,
        ),
        registry=registry,
        sessions=sessions,
        confirmations=confirmations,
        skill_bus=SkillBus(registry),
        context_builder=ContextBuilder(
            max_turns=settings.context.max_turns,
            max_chars=settings.context.max_chars,
        ),
        policies=ToolPolicies(
            default=settings.confirmation.default_policy,
            overrides=settings.confirmation.tools,
        ),
        max_iterations=settings.agent.max_iterations,
        confirmation_timeout=settings.confirmation.timeout_seconds,
        system_preamble=settings.agent.system_prompt,
        agent_name=settings.agent.name,
    )
    return Runtime(
        settings=settings,
        loop=loop,
        sessions=sessions,
        storage=storage,
        confirmations=confirmations,
        registry=registry,
    )


async def serve(runtime: Runtime, channel: Channel) -> None:
    """Run the agent loop on a channel until it closes, then release confirmations."""
    try:
        await runtime.loop.run(channel)
    finally:
        await runtime.confirmations.close()


def _load_object(target: str) -> Any:
    """Resolve 'package.module:attr' to the named object."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:callable', got '{target}'")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ValueError(f"Module '{module_name}' has no attribute '{attr}'") from e


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args.config, args.log_level)

    log.info(
        "parley.starting",
        version=settings.agent.version,
        llm_model=settings.llm.model,
        handler=settings.confirmation.handler,
        sessions=settings.sessions.backend,
    )

    # ── Model client + skills ─────────────────────────────────────────────────
    try:
        llm_client = _load_object(args.llm)()
        registry = SkillRegistry()
        for hook in args.skills:
            _load_object(hook)(registry)
    except (ImportError, ValueError, TypeError) as e:
        log.error("parley.startup_failed", error=str(e), error_type=type(e).__name__)
        print(f"\n❌  {e}\n", file=sys.stderr)
        return 1

    if not isinstance(llm_client, BaseLLMClient):
        print(f"\n❌  {args.llm} did not return a BaseLLMClient\n", file=sys.stderr)
        return 1

    if not await llm_client.health_check():
        log.error("parley.llm_health_check_failed", client=repr(llm_client))
        print("\n❌  Model client health check failed.\n", file=sys.stderr)
        return 1

    # ── Launch ────────────────────────────────────────────────────────────────
    from channels.terminal import TerminalChannel

    channel = TerminalChannel(chat_id=args.chat_id)
    try:
        runtime = build_runtime(settings, llm_client, registry, channel)
    except ValueError as e:
        log.error("parley.startup_failed", error=str(e), error_type=type(e).__name__)
        print(f"\n❌  {e}\n", file=sys.stderr)
        return 1
    log.info("parley.serving", skills=registry.list_names(), channel=channel.name)
    try:
        await serve(runtime, channel)
    except KeyboardInterrupt:
        log.info("parley.interrupted")
    return 0


def cli() -> None:
    """Console-script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
