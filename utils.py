"""Utility functions for the bot router."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Set

from dotenv import load_dotenv

from config import AppConfig, api_key_from_env
from logger import mask_secret

log = logging.getLogger("bot_router")

_CREDENTIAL_VARS = ("OPENAI_API_KEY", "VAPI_API_KEY", "RETELL_API_KEY", "BLAND_API_KEY")

# Strong references to fire-and-forget tasks until they finish.
_background_tasks: Set[asyncio.Task] = set()


def keep_until_done(task: asyncio.Task) -> asyncio.Task:
    """Hold a reference to a task nobody awaits until it completes."""
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def run_in_background(aw: Awaitable[Any]) -> asyncio.Task:
    """Schedule cleanup work nobody awaits."""
    return keep_until_done(asyncio.ensure_future(aw))


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))
    else:
        log.info("No .env in program directory: %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))
    elif p2 != p1:
        log.info("No .env in current directory: %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config: AppConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=== Bot router startup config ===")
    log.info("OPENAI_BASE_URL=%s", config.openai_base_url)
    log.info("OPENAI_MODEL=%s", config.openai_model)
    log.info("OPENAI_TEMPERATURE=%s", config.openai_temperature)
    log.info("OPENAI_MAX_TOKENS=%s", config.openai_max_tokens)
    for var in _CREDENTIAL_VARS:
        key = api_key_from_env(var)
        log.info("%s_set=%s value=%s len=%s", var, bool(key), mask_secret(key), len(key))
    log.info("ENABLE_FREE_FALLBACK=%s", config.enable_free_fallback)
    for name, seconds in sorted(config.backend_timeouts.items()):
        log.info("BACKEND_TIMEOUT[%s]=%ss", name, seconds)
    log.info("DEFAULT_TIMEOUT_S=%s", config.default_timeout_s)
    log.info("REQUIRE_EXPLICIT_TIMEOUTS=%s", config.require_explicit_timeouts)
    log.info("REQUEST_CEILING_S=%s", config.request_ceiling_s)
    log.info("STREAM_IDLE_TIMEOUT_S=%s", config.stream_idle_timeout_s)
    log.info("CONNECT_TIMEOUT_S=%s", config.connect_timeout_s)
    log.info("SYNTHETIC_SEED=%s", config.synthetic_seed)
    log.info("EXPOSE_ERROR_DETAIL=%s", config.expose_error_detail)
    log.info("ENABLE_DIAGNOSTIC_ENDPOINTS=%s", config.enable_diagnostic_endpoints)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("ProgramDir=%s", str(Path(__file__).resolve().parent))
    log.info("=================================")
