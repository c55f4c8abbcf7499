"""
config.py - Environment configuration

Everything is read from the environment (a local .env file is loaded first),
the same way the single-file agents read MODEL_ID and ANTHROPIC_BASE_URL.
load_settings() builds a fresh snapshot so tests can construct their own.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(override=True)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Runtime settings snapshot."""
    model: str = "claude-sonnet-4-5-20250929"
    summary_model: str = "claude-haiku-4-5-20251001"
    base_url: str | None = None
    max_tokens: int = 4096
    chat_max_iterations: int = 10
    super_max_iterations: int = 8
    heartbeat_seconds: float = 5.0
    max_context_tokens: int = 100_000
    compress_threshold: int = 90_000
    debug_log: bool = False
    log_level: str = "INFO"
    langfuse_enabled: bool = False


def load_settings() -> Settings:
    return Settings(
        model=os.getenv("MODEL_ID", Settings.model),
        summary_model=os.getenv("SUMMARY_MODEL_ID", Settings.summary_model),
        base_url=os.getenv("ANTHROPIC_BASE_URL") or None,
        max_tokens=_env_int("MAX_TOKENS", Settings.max_tokens),
        chat_max_iterations=_env_int("CHAT_MAX_ITERATIONS", Settings.chat_max_iterations),
        super_max_iterations=_env_int("SUPER_MAX_ITERATIONS", Settings.super_max_iterations),
        heartbeat_seconds=_env_float("TOOL_HEARTBEAT_SECONDS", Settings.heartbeat_seconds),
        max_context_tokens=_env_int("MAX_CONTEXT_TOKENS", Settings.max_context_tokens),
        compress_threshold=_env_int("COMPRESS_THRESHOLD", Settings.compress_threshold),
        debug_log=_env_bool("DEBUG_LOG"),
        log_level=os.getenv("LOG_LEVEL", Settings.log_level).upper(),
        langfuse_enabled=bool(
            os.getenv("LANGFUSE_SECRET_KEY") and os.getenv("LANGFUSE_PUBLIC_KEY")
        ),
    )


SETTINGS = load_settings()
