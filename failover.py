"""Sequential failover across back-ends, each trial raced against its own timer."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from clock import Clock, MonotonicClock
from errors import (
    CONFIGURATION_REQUIRED_MESSAGE,
    ConfigurationError,
    FailoverExhausted,
    UpstreamError,
    UpstreamTimeoutError,
    classify_failure,
)
from models import BackendResult, ChatMessage, Exhausted, FailoverOutcome, NativeStream, Persona, Success
from registry import BackendDescriptor
from utils import keep_until_done, run_in_background

log = logging.getLogger("bot_router")


def _discard_late_result(task: asyncio.Task) -> None:
    """Done-callback for a detached trial: consume its outcome, close a late stream."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.debug("Detached trial finished with error: %r", exc)
        return
    result = task.result()
    if isinstance(result, NativeStream):
        run_in_background(result.aclose())


def _detach(task: asyncio.Task) -> None:
    """Cancel a losing task without awaiting it."""
    if task.done():
        _discard_late_result(task)
        return
    keep_until_done(task)
    task.add_done_callback(_discard_late_result)
    task.cancel()


class FailoverOrchestrator:
    """
    Walk candidates in order until one answers before its timeout.

    Exactly one back-end is in flight at a time. A trial whose adapter
    completes when elapsed >= timeout counts as timed out.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or MonotonicClock()

    async def run_trial(
        self,
        backend: BackendDescriptor,
        conversation: List[ChatMessage],
        persona: Persona,
    ) -> BackendResult:
        timeout_s = backend.timeout_s
        started = self._clock.now()
        call = asyncio.ensure_future(backend.invoke(conversation, persona))
        timer = asyncio.ensure_future(self._clock.sleep(timeout_s))
        try:
            done, _ = await asyncio.wait({call, timer}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            _detach(call)
            _detach(timer)
            raise

        elapsed = self._clock.now() - started
        if timer in done or call not in done or elapsed >= timeout_s:
            _detach(call)
            _detach(timer)
            raise UpstreamTimeoutError(
                backend.name, f"{backend.name} service timeout after {int(round(timeout_s * 1000))}ms"
            )

        _detach(timer)
        exc = call.exception()
        if exc is not None:
            err = classify_failure(backend.name, exc)
            if err is exc:
                raise err
            raise err from exc
        return call.result()

    async def attempt(
        self,
        candidates: List[BackendDescriptor],
        conversation: List[ChatMessage],
        persona: Persona,
        req_id: str = "-",
    ) -> FailoverOutcome:
        if not candidates:
            raise ConfigurationError(CONFIGURATION_REQUIRED_MESSAGE)

        tried: List[str] = []
        last_error: Optional[UpstreamError] = None
        total = len(candidates)
        for i, backend in enumerate(candidates, start=1):
            tried.append(backend.name)
            log.info(
                "Attempt %d/%d req_id=%s -> %s (timeout %.0fms)",
                i,
                total,
                req_id,
                backend.name,
                backend.timeout_s * 1000,
            )
            try:
                result = await self.run_trial(backend, conversation, persona)
            except UpstreamError as e:
                last_error = e
                if i < total:
                    log.warning(
                        "%s service %s req_id=%s: %s - failing over to %s...",
                        backend.name,
                        e.kind,
                        req_id,
                        e.cause,
                        candidates[i].name,
                    )
                else:
                    log.error(
                        "%s service %s req_id=%s: %s - no candidates left",
                        backend.name,
                        e.kind,
                        req_id,
                        e.cause,
                    )
                continue

            log.info("%s service completed successfully req_id=%s", backend.name, req_id)
            return Success(result=result, source=backend.name)

        assert last_error is not None
        log.error("All services failed req_id=%s tried=%s last=%s", req_id, tried, last_error.backend)
        return Exhausted(last_error=last_error, tried=tried)

    async def run(
        self,
        candidates: List[BackendDescriptor],
        conversation: List[ChatMessage],
        persona: Persona,
        req_id: str = "-",
    ) -> Success:
        """Like attempt(), but raises FailoverExhausted instead of returning Exhausted."""
        outcome = await self.attempt(candidates, conversation, persona, req_id=req_id)
        if isinstance(outcome, Exhausted):
            raise FailoverExhausted(outcome.last_error, outcome.tried)
        return outcome
