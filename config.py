"""Configuration management for the bot router service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

# Credentials are read live (see api_key_from_env); values equal to the
# documented placeholders count as "not configured".
CREDENTIAL_PLACEHOLDERS: Dict[str, str] = {
    "OPENAI_API_KEY": "your-openai-api-key-here",
    "VAPI_API_KEY": "your-vapi-api-key-here",
    "RETELL_API_KEY": "your-retell-api-key-here",
    "BLAND_API_KEY": "your-bland-api-key-here",
}

# Seconds. Sum stays under DEFAULT_REQUEST_CEILING_S.
DEFAULT_BACKEND_TIMEOUTS: Dict[str, float] = {
    "OpenAI": 12.0,
    "Vapi": 6.0,
    "Retell": 5.0,
    "Bland": 4.0,
    "Free Fallback": 2.0,
}

DEFAULT_REQUEST_CEILING_S = 30.0


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_optional_int(name: str) -> Optional[int]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return None
    try:
        return int(v.strip())
    except ValueError:
        return None


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


def _csv_timeouts(name: str) -> Dict[str, float]:
    """
    Parse "Name=seconds,Other=seconds" into a dict.

    Malformed items are skipped; names are kept as written.
    """
    out: Dict[str, float] = {}
    v = os.getenv(name, "")
    for item in v.split(","):
        if "=" not in item:
            continue
        key, _, raw = item.partition("=")
        key = key.strip()
        if not key:
            continue
        try:
            out[key] = float(raw.strip())
        except ValueError:
            continue
    return out


def _fold_timeouts(overrides: Dict[str, float]) -> Dict[str, float]:
    """Merge overrides onto the defaults, matching known back-end names case-insensitively."""
    timeouts = dict(DEFAULT_BACKEND_TIMEOUTS)
    canonical = {name.lower(): name for name in timeouts}
    for key, seconds in overrides.items():
        timeouts[canonical.get(key.lower(), key)] = seconds
    return timeouts


def api_key_from_env(var_name: str) -> str:
    """
    Return the credential stored in `var_name`, or "" when unset or still the placeholder.

    Evaluated on every call so credentials added at runtime are picked up.
    """
    value = (os.getenv(var_name) or "").strip()
    if not value or value == CREDENTIAL_PLACEHOLDERS.get(var_name):
        return ""
    return value


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # OpenAI pass-through settings
    openai_base_url: str
    openai_model: str
    openai_temperature: float
    openai_max_tokens: int

    # Back-end selection
    enable_free_fallback: bool
    backend_timeouts: Dict[str, float] = field(default_factory=dict)
    default_timeout_s: float = 10.0
    require_explicit_timeouts: bool = True
    request_ceiling_s: float = DEFAULT_REQUEST_CEILING_S

    # Streaming
    stream_idle_timeout_s: float = 20.0
    connect_timeout_s: float = 10.0

    # Synthetic replies: None -> unseeded
    synthetic_seed: Optional[int] = None

    # Error surface
    expose_error_detail: bool = False
    enable_diagnostic_endpoints: bool = False

    # Server settings
    port: int = 8000
    log_level: str = "INFO"
    max_request_bytes: int = 1_000_000
    log_path: str = "/var/log/bot-router/bot-router.log"
    user_agent: str = "bot-router/1.0.0"

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        timeouts = _fold_timeouts(_csv_timeouts("BACKEND_TIMEOUTS"))
        return cls(
            openai_base_url=_env_str("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            openai_model=_env_str("OPENAI_MODEL", "gpt-3.5-turbo"),
            openai_temperature=_env_float("OPENAI_TEMPERATURE", 0.7),
            openai_max_tokens=_env_int("OPENAI_MAX_TOKENS", 300),
            enable_free_fallback=_env_bool("ENABLE_FREE_FALLBACK", True),
            backend_timeouts=timeouts,
            default_timeout_s=_env_float("DEFAULT_TIMEOUT_S", 10.0),
            require_explicit_timeouts=_env_bool("REQUIRE_EXPLICIT_TIMEOUTS", True),
            request_ceiling_s=_env_float("REQUEST_CEILING_S", DEFAULT_REQUEST_CEILING_S),
            stream_idle_timeout_s=_env_float("STREAM_IDLE_TIMEOUT_S", 20.0),
            connect_timeout_s=_env_float("CONNECT_TIMEOUT_S", 10.0),
            synthetic_seed=_env_optional_int("SYNTHETIC_SEED"),
            expose_error_detail=_env_bool("EXPOSE_ERROR_DETAIL", False),
            enable_diagnostic_endpoints=_env_bool("ENABLE_DIAGNOSTIC_ENDPOINTS", False),
            port=_env_int("PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 1_000_000),
            log_path=_env_str("LOG_PATH", "/var/log/bot-router/bot-router.log"),
            user_agent=_env_str("USER_AGENT", "bot-router/1.0.0"),
        )

    def _timeout_key(self, backend_name: str) -> Optional[str]:
        wanted = backend_name.lower()
        for key in self.backend_timeouts:
            if key.lower() == wanted:
                return key
        return None

    def timeout_for(self, backend_name: str) -> float:
        """Per-backend timeout in seconds (name matched case-insensitively); unknown names get the default."""
        key = self._timeout_key(backend_name)
        if key is None:
            return self.default_timeout_s
        return self.backend_timeouts[key]

    def has_explicit_timeout(self, backend_name: str) -> bool:
        return self._timeout_key(backend_name) is not None

    def validate(self) -> None:
        """Validate configuration."""
        if not self.openai_base_url:
            raise ValueError("OPENAI_BASE_URL must be non-empty")
        if not self.openai_model:
            raise ValueError("OPENAI_MODEL must be non-empty")
        if self.openai_max_tokens <= 0:
            raise ValueError("OPENAI_MAX_TOKENS must be > 0")
        if self.default_timeout_s <= 0:
            raise ValueError("DEFAULT_TIMEOUT_S must be > 0")
        for name, seconds in self.backend_timeouts.items():
            if seconds <= 0:
                raise ValueError(f"BACKEND_TIMEOUTS entry for {name!r} must be > 0")
        if self.request_ceiling_s <= 0:
            raise ValueError("REQUEST_CEILING_S must be > 0")
        total = sum(self.backend_timeouts.values())
        if total > self.request_ceiling_s:
            raise ValueError(
                f"BACKEND_TIMEOUTS sum to {total:g}s which exceeds REQUEST_CEILING_S={self.request_ceiling_s:g}s"
            )
        if self.stream_idle_timeout_s <= 0:
            raise ValueError("STREAM_IDLE_TIMEOUT_S must be > 0")
        if self.connect_timeout_s <= 0:
            raise ValueError("CONNECT_TIMEOUT_S must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
