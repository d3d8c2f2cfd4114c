"""
Root conftest — isolate configuration from the developer's environment so
Settings() in tests sees only field defaults, the YAML a test passes in, and
variables the test sets itself.
"""
import pytest

_PARLEY_ENV_VARS = [
    "PARLEY_CONFIG",
    "AGENT__MAX_ITERATIONS",
    "AGENT__NAME",
    "LLM__MODEL",
    "SESSIONS__BACKEND",
    "SESSIONS__PATH",
    "SESSIONS__CACHE_SIZE",
    "CONFIRMATION__HANDLER",
    "CONFIRMATION__TIMEOUT_SECONDS",
    "LOGGING__LEVEL",
]


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch):
    """Remove Parley env vars for every test and disable .env file loading
    so a local developer .env never leaks into test settings."""
    for var in _PARLEY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    monkeypatch.setattr(settings_module, "_singleton", None)
