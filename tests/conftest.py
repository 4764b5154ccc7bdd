"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- A manual clock for deterministic timeout tests
- Scriptable fake back-end adapters
- Test environment setup
"""

import asyncio
import logging
import os
import sys
from pathlib import Path

import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/bot_router_test.log")
os.environ.setdefault("LOG_COLOR", "false")
for _var in ("OPENAI_API_KEY", "VAPI_API_KEY", "RETELL_API_KEY", "BLAND_API_KEY", "BACKEND_TIMEOUTS", "SYNTHETIC_SEED"):
    os.environ.pop(_var, None)

from models import ChatMessage, CompletePayload, NativeStream, Persona  # noqa: E402
from registry import BackendDescriptor, BackendRegistry  # noqa: E402
from upstream import UpstreamAdapter  # noqa: E402


class ManualClock:
    """Clock that only moves when advance() is called."""

    def __init__(self, start: float = 100.0) -> None:
        self._now = start
        self._sleepers = []

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        fut = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._now + seconds, fut))
        await fut

    def advance(self, seconds: float) -> None:
        self._now += seconds
        for entry in list(self._sleepers):
            deadline, fut = entry
            if deadline <= self._now:
                self._sleepers.remove(entry)
                if not fut.done():
                    fut.set_result(None)


class FakeAdapter(UpstreamAdapter):
    """
    Scriptable back-end.

    - text: reply returned as CompletePayload
    - error: exception raised instead
    - delay_s: real asyncio sleep before answering
    - hang: never answer (until cancelled)
    - advance: (clock, seconds) moved forward before answering
    """

    def __init__(
        self,
        name,
        text="ok",
        *,
        error=None,
        delay_s=0.0,
        hang=False,
        advance=None,
        available=True,
        native_chunks=None,
        tracker=None,
    ):
        self.name = name
        self.text = text
        self.error = error
        self.delay_s = delay_s
        self.hang = hang
        self.advance = advance
        self.available = available
        self.native_chunks = native_chunks
        self.tracker = tracker
        self.calls = 0
        self.cancelled = False
        self.closed = False
        self.seen_conversation = None

    def is_available(self):
        return self.available

    async def invoke(self, conversation, persona):
        self.calls += 1
        self.seen_conversation = list(conversation)
        if self.tracker is not None:
            self.tracker.enter()
        try:
            if self.advance is not None:
                # Let the trial timer register before moving time.
                await asyncio.sleep(0)
                clock, seconds = self.advance
                clock.advance(seconds)
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            if self.hang:
                await asyncio.Event().wait()
            if self.error is not None:
                raise self.error
            if self.native_chunks is not None:
                return NativeStream(chunks=_aiter(self.native_chunks), closer=self._close)
            return CompletePayload(self.text)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        finally:
            if self.tracker is not None:
                self.tracker.exit()

    async def _close(self):
        self.closed = True


class ConcurrencyTracker:
    def __init__(self):
        self.active = 0
        self.peak = 0

    def enter(self):
        self.active += 1
        self.peak = max(self.peak, self.active)

    def exit(self):
        self.active -= 1


async def _aiter(items):
    for item in items:
        yield item


def make_registry(*adapters, timeout_s=0.5):
    """Registry with list order as priority and a uniform timeout."""
    return BackendRegistry(
        BackendDescriptor(name=a.name, priority=i, adapter=a, timeout_s=timeout_s)
        for i, a in enumerate(adapters, start=1)
    )


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def persona():
    return Persona(display_name="TestBot", instructions="You are a helpful assistant. You love puns.")


@pytest.fixture
def conversation(persona):
    return [persona.system_message(), ChatMessage(role="user", content="Hello, how are you?")]


@pytest.fixture
def bot_logs(caplog):
    """Capture records from the service logger even when it does not propagate."""
    logger = logging.getLogger("bot_router")
    logger.addHandler(caplog.handler)
    old_level = logger.level
    logger.setLevel(logging.DEBUG)
    caplog.set_level(logging.DEBUG)
    yield caplog
    logger.removeHandler(caplog.handler)
    logger.setLevel(old_level)


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root
