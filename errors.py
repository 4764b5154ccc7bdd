"""Error taxonomy, failure classification and the JSON error responder."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

import httpx
from fastapi.responses import JSONResponse

log = logging.getLogger("bot_router")

DETAIL_LIMIT = 200

CONFIGURATION_REQUIRED_MESSAGE = (
    "No API services are configured. Please add at least one API key "
    "(OpenAI, Vapi, Retell, or Bland) to your environment variables."
)


class RouterError(Exception):
    """Base class for every failure the router turns into an HTTP response."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RequestValidationError(RouterError):
    """Malformed or incomplete request body. Never retried."""

    status_code = 400


class PayloadTooLargeError(RouterError):
    status_code = 413


class EndpointDisabledError(RouterError):
    status_code = 404


class ConfigurationError(RouterError):
    """No usable back-end, or an invalid registry. Never retried."""

    status_code = 500


class UpstreamError(RouterError):
    """A single back-end failed. The orchestrator advances to the next candidate."""

    status_code = 500
    kind = "error"

    def __init__(self, backend: str, cause: str) -> None:
        super().__init__(cause)
        self.backend = backend
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.backend}: {self.cause}"


class UpstreamAuthError(UpstreamError):
    status_code = 401


class UpstreamQuotaError(UpstreamError):
    status_code = 402


class UpstreamRateLimitError(UpstreamError):
    status_code = 429


class UpstreamTimeoutError(UpstreamError):
    status_code = 504
    kind = "timeout"


class UpstreamGenericError(UpstreamError):
    status_code = 500


class StreamConstructionError(UpstreamGenericError):
    """Framed records for a complete payload could not be built."""


class FailoverExhausted(RouterError):
    """Every candidate back-end failed; carries the last failure."""

    def __init__(self, last_error: UpstreamError, tried: Sequence[str]) -> None:
        super().__init__(f"All services failed. Last error from {last_error.backend}: {last_error.cause}")
        self.last_error = last_error
        self.tried = list(tried)
        self.status_code = last_error.status_code


def classify_error_text(backend: str, text: str) -> UpstreamError:
    """Map free-form upstream error text to the taxonomy."""
    low = (text or "").lower()
    if "timeout" in low or "timed out" in low:
        return UpstreamTimeoutError(backend, text)
    if "rate limit" in low or "rate_limit" in low:
        return UpstreamRateLimitError(backend, text)
    if "quota" in low:
        return UpstreamQuotaError(backend, text)
    if "invalid_api_key" in low or "invalid api key" in low or "unauthorized" in low:
        return UpstreamAuthError(backend, text)
    return UpstreamGenericError(backend, text)


def classify_http_status(backend: str, status_code: int, body: str) -> UpstreamError:
    """Map a non-200 upstream HTTP response to the taxonomy."""
    cause = f"HTTP {status_code}: {body}" if body else f"HTTP {status_code}"
    low = (body or "").lower()
    if status_code in (401, 403) or "invalid_api_key" in low:
        return UpstreamAuthError(backend, cause)
    if status_code == 402 or "insufficient_quota" in low:
        return UpstreamQuotaError(backend, cause)
    if status_code == 429:
        return UpstreamRateLimitError(backend, cause)
    if status_code in (408, 504):
        return UpstreamTimeoutError(backend, cause)
    return UpstreamGenericError(backend, cause)


def classify_failure(backend: str, exc: BaseException) -> UpstreamError:
    """Turn any exception raised by an adapter into an UpstreamError."""
    if isinstance(exc, UpstreamError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.text[:500]
        except httpx.ResponseNotRead:
            body = ""
        return classify_http_status(backend, exc.response.status_code, body)
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return UpstreamTimeoutError(backend, f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__)
    if isinstance(exc, httpx.TransportError):
        return UpstreamGenericError(backend, f"{type(exc).__name__}: {exc}")
    return classify_error_text(backend, f"{type(exc).__name__}: {exc}")


def clip(text: str, limit: int = DETAIL_LIMIT) -> str:
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _exhausted_message(err: UpstreamError) -> str:
    name = err.backend
    if isinstance(err, UpstreamTimeoutError):
        return (
            f"{name} service is taking too long to respond. The system attempted to use backup "
            "services but all available services are currently slow or unavailable. "
            "Please try again in a moment."
        )
    if isinstance(err, UpstreamRateLimitError):
        return f"Rate limit exceeded on {name}. Please wait a moment before sending another message."
    if isinstance(err, UpstreamQuotaError):
        return f"{name} quota exceeded. Please check your {name} account usage."
    if isinstance(err, UpstreamAuthError):
        return f"Invalid {name} API key. Please check your API key configuration."
    return (
        f"All available services failed (last tried: {name}). "
        "An error occurred while processing your request. Please try again."
    )


def error_payload(exc: BaseException, expose_detail: bool = False) -> tuple[int, Dict[str, Any]]:
    """
    Build (status_code, body) for a failed request.

    The `error` string is stable per outcome; the raw cause is only attached
    (clipped) when expose_detail is on.
    """
    if isinstance(exc, FailoverExhausted):
        last = exc.last_error
        body: Dict[str, Any] = {
            "error": _exhausted_message(last),
            "service": last.backend,
            "tried": exc.tried,
        }
        if expose_detail:
            body["detail"] = clip(last.cause)
        return last.status_code, body

    if isinstance(exc, UpstreamError):
        body = {"error": _exhausted_message(exc), "service": exc.backend}
        if expose_detail:
            body["detail"] = clip(exc.cause)
        return exc.status_code, body

    if isinstance(exc, RouterError):
        return exc.status_code, {"error": exc.message}

    body = {"error": "An error occurred while processing your request. Please try again."}
    if expose_detail:
        body["detail"] = clip(f"{type(exc).__name__}: {exc}")
    return 500, body


def error_response(
    exc: BaseException,
    *,
    req_id: Optional[str] = None,
    expose_detail: bool = False,
) -> JSONResponse:
    """Render a failure as a JSON response and log the full cause server-side."""
    status, body = error_payload(exc, expose_detail=expose_detail)
    if isinstance(exc, FailoverExhausted):
        log.error(
            "Request failed req_id=%s status=%s tried=%s last=%s kind=%s cause=%s",
            req_id,
            status,
            exc.tried,
            exc.last_error.backend,
            exc.last_error.kind,
            clip(exc.last_error.cause, 500),
        )
    elif isinstance(exc, RouterError):
        log.warning("Request rejected req_id=%s status=%s error=%s", req_id, status, exc.message)
    else:
        log.error("Unclassified failure req_id=%s err=%r", req_id, exc)
    return JSONResponse(status_code=status, content=body)
