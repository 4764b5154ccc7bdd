"""Back-end adapter interface and the OpenAI pass-through adapter."""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from config import AppConfig, api_key_from_env
from errors import (
    UpstreamAuthError,
    UpstreamError,
    UpstreamGenericError,
    classify_error_text,
    classify_failure,
    classify_http_status,
)
from models import BackendResult, ChatMessage, NativeStream, Persona
from stream_handler import frame_openai_sse, peek_first_sse_choices
from utils import run_in_background

log = logging.getLogger("bot_router")


class UpstreamAdapter(abc.ABC):
    """One text-generation back-end: `invoke` plus a display name."""

    name: str = ""

    @abc.abstractmethod
    async def invoke(self, conversation: List[ChatMessage], persona: Persona) -> BackendResult:
        """
        Answer the conversation. `conversation` already starts with the
        persona system message. Raises an UpstreamError subclass on failure.
        """

    def is_available(self) -> bool:
        return True


async def _close_quietly(resp: Optional[httpx.Response], client: httpx.AsyncClient) -> None:
    if resp is not None:
        with contextlib.suppress(Exception):
            await resp.aclose()
    with contextlib.suppress(Exception):
        await client.aclose()


class OpenAIAdapter(UpstreamAdapter):
    """Streams chat completions from the OpenAI API, unbuffered."""

    name = "OpenAI"
    credential_env = "OPENAI_API_KEY"

    def __init__(
        self,
        config: AppConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._transport = transport

    def is_available(self) -> bool:
        return bool(api_key_from_env(self.credential_env))

    def get_headers(self, api_key: str) -> Dict[str, str]:
        """Get default headers for the OpenAI API."""
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }

    def build_payload(self, conversation: List[ChatMessage], stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._config.openai_model,
            "messages": [m.to_dict() for m in conversation],
            "temperature": self._config.openai_temperature,
            "max_tokens": self._config.openai_max_tokens,
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _new_client(self) -> httpx.AsyncClient:
        # No read timeout: the failover timer bounds the first event and the
        # idle timeout bounds the rest of the stream.
        t = self._config.connect_timeout_s
        return httpx.AsyncClient(
            timeout=httpx.Timeout(connect=t, write=t, pool=t, read=None),
            transport=self._transport,
        )

    def _require_key(self) -> str:
        api_key = api_key_from_env(self.credential_env)
        if not api_key:
            raise UpstreamAuthError(self.name, f"{self.credential_env} is not configured")
        return api_key

    async def invoke(self, conversation: List[ChatMessage], persona: Persona) -> BackendResult:
        """
        Open a streaming completion and validate its first event.

        Status and first event are checked here so they count against the
        trial timeout; the remaining events are framed lazily by the returned
        NativeStream.
        """
        api_key = self._require_key()
        client = self._new_client()
        resp: Optional[httpx.Response] = None
        try:
            req = client.build_request(
                "POST",
                f"{self._config.openai_base_url}/chat/completions",
                headers=self.get_headers(api_key),
                json=self.build_payload(conversation, stream=True),
            )
            t0 = time.time()
            resp = await client.send(req, stream=True)
            dt = (time.time() - t0) * 1000
            log.info(
                "Upstream chat backend=%s model=%s status=%s ms=%.1f persona=%s",
                self.name,
                self._config.openai_model,
                resp.status_code,
                dt,
                persona.display_name,
            )

            if resp.status_code != 200:
                snippet = await self.read_error_snippet(resp)
                log.warning(
                    "Upstream chat error backend=%s status=%s content-type=%s",
                    self.name,
                    resp.status_code,
                    resp.headers.get("content-type", ""),
                )
                raise classify_http_status(self.name, resp.status_code, snippet)

            aiter = resp.aiter_lines()
            ok, first_chunk, reason = await peek_first_sse_choices(aiter)
            if not ok or first_chunk is None:
                raise classify_error_text(self.name, f"stream-invalid: {reason}")
        except asyncio.CancelledError:
            # Lost the timeout race or the client went away: release in the background.
            run_in_background(_close_quietly(resp, client))
            raise
        except UpstreamError:
            await _close_quietly(resp, client)
            raise
        except Exception as e:
            await _close_quietly(resp, client)
            raise classify_failure(self.name, e) from e

        opened = resp

        async def closer() -> None:
            await _close_quietly(opened, client)

        return NativeStream(
            chunks=frame_openai_sse(
                aiter,
                first_chunk,
                backend=self.name,
                idle_timeout_s=self._config.stream_idle_timeout_s,
            ),
            closer=closer,
        )

    async def complete(self, conversation: List[ChatMessage]) -> Dict[str, Any]:
        """One non-streaming completion; returns {"message", "usage"}."""
        api_key = self._require_key()
        async with self._new_client() as client:
            try:
                resp = await client.post(
                    f"{self._config.openai_base_url}/chat/completions",
                    headers=self.get_headers(api_key),
                    json=self.build_payload(conversation, stream=False),
                )
            except httpx.HTTPError as e:
                raise classify_failure(self.name, e) from e

            if resp.status_code != 200:
                raise classify_http_status(self.name, resp.status_code, resp.text[:2000])
            try:
                data = resp.json()
            except ValueError as e:
                raise UpstreamGenericError(self.name, "response body is not JSON") from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise UpstreamGenericError(self.name, "response has no choices[]")
        message = (choices[0].get("message") or {}).get("content")
        return {"message": message, "usage": data.get("usage")}

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except Exception:
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]
