"""
config/settings.py — Parley Runtime Settings

Merges config.yaml (defaults/structure) with environment variables and .env.
Pydantic-powered — all fields are validated and typed.

  - Field validators reject bad values at parse time
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a human-readable message listing every problem found
  - load_settings() respects the PARLEY_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_BACKENDS = {"memory", "file"}
_VALID_HANDLERS = {"cli", "chat", "auto_approve", "auto_deny"}
_VALID_POLICIES = {"auto", "require_confirmation", "forbidden"}

_BLOCKED_PATH_PREFIXES: tuple[str, ...] = (
    "/etc", "/proc", "/sys", "/dev", "/boot",
    "/private/etc",
    "/usr", "/bin", "/sbin", "/lib", "/lib64",
)


def _is_blocked_system_path(p: str) -> bool:
    try:
        resolved = str(Path(p).expanduser().resolve())
    except (ValueError, OSError):
        return False
    return any(
        resolved == prefix or resolved.startswith(prefix + "/")
        for prefix in _BLOCKED_PATH_PREFIXES
    )


def _one_of(value: str, valid: set[str], field: str) -> str:
    v = value.strip().lower()
    if v not in valid:
        raise ValueError(f"{field} must be one of {sorted(valid)}, got '{value}'")
    return v


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class AgentConfig(BaseModel):
    name: str = "Parley"
    version: str = "0.1.0"
    max_iterations: int = 20
    system_prompt: Optional[str] = None     # None → built-in preamble

    @field_validator("max_iterations")
    @classmethod
    def _positive_iterations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent.max_iterations must be >= 1")
        return v


class LLMRetryConfig(BaseModel):
    """Exponential backoff config for transient model errors."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    @field_validator("max_attempts")
    @classmethod
    def _positive_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("llm.retry.max_attempts must be >= 1")
        return v


class LLMConfig(BaseModel):
    model: str = "gpt-4o"
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout_seconds: float = 60.0
    retry: LLMRetryConfig = Field(default_factory=LLMRetryConfig)

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("llm.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        if v < 1:
            raise ValueError("llm.max_tokens must be >= 1")
        return v


class SessionsConfig(BaseModel):
    backend: str = "file"
    path: str = "./data/sessions"
    cache_size: int = 256                      # sessions kept in memory (LRU)

    @field_validator("backend")
    @classmethod
    def _valid_backend(cls, v: str) -> str:
        return _one_of(v, _VALID_BACKENDS, "sessions.backend")

    @field_validator("cache_size")
    @classmethod
    def _positive_cache(cls, v: int) -> int:
        if v < 1:
            raise ValueError("sessions.cache_size must be >= 1")
        return v


class ContextConfig(BaseModel):
    max_turns: Optional[int] = 40
    max_chars: Optional[int] = 20_000

    @field_validator("max_turns", "max_chars")
    @classmethod
    def _non_negative(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("context budgets must be >= 0 (or null for unlimited)")
        return v


class ConfirmationConfig(BaseModel):
    handler: str = "cli"
    timeout_seconds: Optional[float] = 120.0    # null → wait indefinitely
    default_policy: str = "auto"
    tools: dict[str, str] = Field(default_factory=dict)   # tool name → policy

    @field_validator("handler")
    @classmethod
    def _valid_handler(cls, v: str) -> str:
        return _one_of(v, _VALID_HANDLERS, "confirmation.handler")

    @field_validator("default_policy")
    @classmethod
    def _valid_default_policy(cls, v: str) -> str:
        return _one_of(v, _VALID_POLICIES, "confirmation.default_policy")

    @field_validator("tools")
    @classmethod
    def _valid_tool_policies(cls, v: dict[str, str]) -> dict[str, str]:
        return {
            name: _one_of(policy, _VALID_POLICIES, f"confirmation.tools.{name}")
            for name, policy in v.items()
        }

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("confirmation.timeout_seconds must be > 0 (or null)")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Parley runtime settings.

    Sources (pydantic-settings order, highest first):
      1. Sections passed in by load_settings() from config.yaml
      2. Environment variables (nested with "__", e.g. AGENT__MAX_ITERATIONS)
      3. .env file
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    agent: AgentConfig = Field(default_factory=AgentConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    confirmation: ConfirmationConfig = Field(default_factory=ConfirmationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("agent", mode="before")
    @classmethod
    def _coerce_agent(cls, v: Any) -> Any:
        return AgentConfig(**v) if isinstance(v, dict) else v

    @field_validator("llm", mode="before")
    @classmethod
    def _coerce_llm(cls, v: Any) -> Any:
        return LLMConfig(**v) if isinstance(v, dict) else v

    @field_validator("sessions", mode="before")
    @classmethod
    def _coerce_sessions(cls, v: Any) -> Any:
        return SessionsConfig(**v) if isinstance(v, dict) else v

    @field_validator("context", mode="before")
    @classmethod
    def _coerce_context(cls, v: Any) -> Any:
        return ContextConfig(**v) if isinstance(v, dict) else v

    @field_validator("confirmation", mode="before")
    @classmethod
    def _coerce_confirmation(cls, v: Any) -> Any:
        return ConfirmationConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def agent_name(self) -> str:
        return self.agent.name

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def sessions_path(self) -> Path:
        return Path(self.sessions.path).expanduser()

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Called once in main.bootstrap() before any subsystem initialises.
        Field validators catch type/value errors at parse time; this method
        catches cross-field problems they can't see.
        """
        errors: list[str] = []

        # ── Session storage ──────────────────────────────────────────────────
        if self.sessions.backend == "file":
            if not self.sessions.path.strip():
                errors.append("sessions.path must be set when sessions.backend is 'file'.")
            elif _is_blocked_system_path(self.sessions.path):
                errors.append(
                    f"sessions.path '{self.sessions.path}' points to a protected "
                    f"system directory. Use './data/sessions'."
                )

        # ── Confirmation policy ──────────────────────────────────────────────
        for name in self.confirmation.tools:
            if not name.strip():
                errors.append("confirmation.tools contains an empty tool name.")
        if (
            self.confirmation.default_policy == "forbidden"
            and not any(p != "forbidden" for p in self.confirmation.tools.values())
        ):
            errors.append(
                "confirmation.default_policy is 'forbidden' and no tool override "
                "allows anything; every tool call would be refused."
            )

        # ── Retry delays ─────────────────────────────────────────────────────
        retry = self.llm.retry
        if retry.base_delay < 0 or retry.max_delay < retry.base_delay:
            errors.append(
                f"llm.retry delays are inconsistent (base_delay={retry.base_delay}, "
                f"max_delay={retry.max_delay}); need 0 <= base_delay <= max_delay."
            )

        # ── Logging ──────────────────────────────────────────────────────────
        if _is_blocked_system_path(self.logging.log_dir):
            errors.append(
                f"logging.log_dir '{self.logging.log_dir}' points to a protected "
                f"system directory. Use './data/logs'."
            )

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nParley startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_KNOWN_SECTIONS = {"agent", "llm", "sessions", "context", "confirmation", "logging"}

_singleton: Optional[Settings] = None
_singleton_lock = _threading.RLock()   # re-entered by load_settings()


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. PARLEY_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("PARLEY_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading the default config on
    first use. Guarded by _singleton_lock against double initialisation.
    """
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            load_settings()
        return _singleton  # type: ignore[return-value]
