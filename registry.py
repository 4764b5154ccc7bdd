"""Back-end registry: static priority order plus per-request availability."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from config import AppConfig
from errors import ConfigurationError
from models import BackendResult, ChatMessage, Persona
from synthetic import SYNTHETIC_TABLES, SyntheticAdapter
from upstream import OpenAIAdapter, UpstreamAdapter

log = logging.getLogger("bot_router")

AUTO_SERVICE = "auto"


@dataclass(frozen=True)
class BackendDescriptor:
    """A registered back-end. Built once at startup and never mutated."""

    name: str
    priority: int
    adapter: UpstreamAdapter
    timeout_s: float
    availability: Optional[Callable[[], bool]] = None

    def is_available(self) -> bool:
        check = self.availability or self.adapter.is_available
        try:
            return bool(check())
        except Exception as e:
            log.warning("Availability check failed backend=%s err=%r", self.name, e)
            return False

    async def invoke(self, conversation: List[ChatMessage], persona: Persona) -> BackendResult:
        return await self.adapter.invoke(conversation, persona)


class BackendRegistry:
    """Ordered, immutable collection of back-ends."""

    def __init__(self, descriptors: Iterable[BackendDescriptor]) -> None:
        items = sorted(descriptors, key=lambda d: d.priority)
        seen_names: set[str] = set()
        seen_priorities: set[int] = set()
        for d in items:
            key = d.name.lower()
            if key in seen_names:
                raise ConfigurationError(f"Duplicate back-end name: {d.name!r}")
            if d.priority in seen_priorities:
                raise ConfigurationError(f"Duplicate back-end priority {d.priority} ({d.name!r})")
            if d.timeout_s <= 0:
                raise ConfigurationError(f"Back-end {d.name!r} needs a positive timeout")
            seen_names.add(key)
            seen_priorities.add(d.priority)
        self._backends: tuple[BackendDescriptor, ...] = tuple(items)

    @property
    def backends(self) -> List[BackendDescriptor]:
        return list(self._backends)

    def list_available(self) -> List[BackendDescriptor]:
        """Available back-ends in ascending priority. Re-evaluated on every call."""
        return [d for d in self._backends if d.is_available()]

    def resolve_explicit(self, name: Optional[str]) -> Optional[BackendDescriptor]:
        """Case-insensitive lookup among currently available back-ends."""
        wanted = (name or "").strip().lower()
        if not wanted or wanted == AUTO_SERVICE:
            return None
        for d in self.list_available():
            if d.name.lower() == wanted:
                return d
        return None

    def candidates(self, preferred: Optional[str] = None) -> List[BackendDescriptor]:
        """The single requested back-end if it resolves, else the full available order."""
        chosen = self.resolve_explicit(preferred)
        if chosen is not None:
            log.info("Using preferred service: %s", chosen.name)
            return [chosen]
        if preferred and preferred.strip().lower() != AUTO_SERVICE:
            log.info("Preferred service %s not available, using fallback order", preferred)
        return self.list_available()

    def status(self) -> Dict[str, Any]:
        available = self.list_available()
        return {
            "configured": bool(available),
            "availableServices": [d.name for d in available],
            "serviceStatus": {d.name.lower(): d.is_available() for d in self._backends},
            "primaryService": available[0].name if available else "none",
        }


def _resolve_timeout(config: AppConfig, name: str) -> float:
    if config.has_explicit_timeout(name):
        return config.timeout_for(name)
    if config.require_explicit_timeouts:
        raise ConfigurationError(
            f"No timeout configured for back-end {name!r}; add it to BACKEND_TIMEOUTS "
            "or set REQUIRE_EXPLICIT_TIMEOUTS=false"
        )
    log.warning("Back-end %s has no explicit timeout; using default %ss", name, config.default_timeout_s)
    return config.default_timeout_s


def build_registry(
    config: AppConfig,
    adapters: Optional[List[UpstreamAdapter]] = None,
) -> BackendRegistry:
    """
    Build the registry in static priority order (list position = priority).

    Defaults to OpenAI, Vapi, Retell, Bland, Free Fallback.
    """
    if adapters is None:
        adapters = default_adapters(config)
    known = {adapter.name.lower() for adapter in adapters}
    unknown = sorted(name for name in config.backend_timeouts if name.lower() not in known)
    if unknown:
        raise ConfigurationError(
            f"BACKEND_TIMEOUTS names no registered back-end: {', '.join(unknown)} "
            f"(registered: {', '.join(adapter.name for adapter in adapters)})"
        )
    descriptors = [
        BackendDescriptor(
            name=adapter.name,
            priority=idx,
            adapter=adapter,
            timeout_s=_resolve_timeout(config, adapter.name),
        )
        for idx, adapter in enumerate(adapters, start=1)
    ]
    return BackendRegistry(descriptors)


def default_adapters(config: AppConfig) -> List[UpstreamAdapter]:
    seed = config.synthetic_seed
    return [
        OpenAIAdapter(config),
        SyntheticAdapter("Vapi", SYNTHETIC_TABLES["Vapi"], credential_env="VAPI_API_KEY", seed=seed),
        SyntheticAdapter("Retell", SYNTHETIC_TABLES["Retell"], credential_env="RETELL_API_KEY", seed=seed),
        SyntheticAdapter("Bland", SYNTHETIC_TABLES["Bland"], credential_env="BLAND_API_KEY", seed=seed),
        SyntheticAdapter(
            "Free Fallback",
            SYNTHETIC_TABLES["Free Fallback"],
            enabled=config.enable_free_fallback,
            seed=seed,
            greet_first_turn=True,
        ),
    ]
