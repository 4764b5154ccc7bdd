"""Upstream SSE reading and the three-record wire framing returned to clients.

Wire format (newline-terminated records):
  0:"<json-escaped text>"          text part (may repeat for native streams)
  d:{"finishReason":..,"usage":..}  completion record
  e:null                            terminal no-error marker
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Tuple

from errors import StreamConstructionError, UpstreamGenericError, UpstreamTimeoutError, classify_error_text
from models import BackendResult, CompletePayload, NativeStream

log = logging.getLogger("bot_router")

SSEEventLines = List[str]

TEXT_PREFIX = "0:"
FINISH_PREFIX = "d:"
TERMINATOR_PREFIX = "e:"

PLACEHOLDER_USAGE: Dict[str, int] = {"promptTokens": 0, "completionTokens": 1}

# OpenAI finish_reason -> wire finishReason
_FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "content_filter": "content-filter",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
}


def _compact(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def frame_text(text: str) -> bytes:
    """Text record; quotes, backslashes and newlines are JSON-escaped."""
    return (TEXT_PREFIX + _compact(text) + "\n").encode("utf-8")


def frame_finish(finish_reason: str = "stop", usage: Optional[Dict[str, int]] = None) -> bytes:
    payload = {"finishReason": finish_reason, "usage": dict(usage or PLACEHOLDER_USAGE)}
    return (FINISH_PREFIX + _compact(payload) + "\n").encode("utf-8")


def frame_terminator() -> bytes:
    return (TERMINATOR_PREFIX + "null\n").encode("utf-8")


def frame_complete_payload(text: str, backend: str = "unknown") -> List[bytes]:
    """
    Build the full [text, completion, terminator] sequence up front.

    Raises StreamConstructionError instead of returning a partial sequence.
    """
    if not isinstance(text, str):
        raise StreamConstructionError(backend, f"payload text must be str, got {type(text).__name__}")
    try:
        return [frame_text(text), frame_finish(), frame_terminator()]
    except (TypeError, ValueError, UnicodeError) as e:
        raise StreamConstructionError(backend, f"could not frame payload: {type(e).__name__}: {e}") from e


async def _iter_records(records: List[bytes]) -> AsyncGenerator[bytes, None]:
    for r in records:
        yield r


async def _iter_native(stream: NativeStream) -> AsyncGenerator[bytes, None]:
    try:
        async for chunk in stream.chunks:
            yield chunk
    finally:
        await stream.aclose()


def normalize(result: BackendResult, backend: str = "unknown") -> AsyncIterator[bytes]:
    """
    Turn any back-end result into the framed byte stream.

    NativeStream passes through unchanged; CompletePayload becomes exactly
    three records, built before the first byte is handed to the transport.
    """
    if isinstance(result, NativeStream):
        return _iter_native(result)
    if isinstance(result, CompletePayload):
        return _iter_records(frame_complete_payload(result.text, backend))
    raise StreamConstructionError(backend, f"unsupported back-end result {type(result).__name__}")


def sse_event_data_text(lines: SSEEventLines) -> str:
    """
    Join all `data:` lines in an SSE event into a single payload.

    SSE concatenates multiple data lines with '\n'.
    """
    parts: List[str] = []
    for ln in lines:
        if ln.startswith("data:"):
            parts.append(ln[len("data:"):].lstrip())
    return "\n".join(parts)


def is_sse_activity_line(line: str) -> bool:
    """
    Treat any SSE field/comment/continuation as activity.
    Fields: data, event, id, retry; comments ":"; and (rare) continuation lines that start with space.
    """
    return (
        line.startswith("data:")
        or line.startswith("event:")
        or line.startswith("id:")
        or line.startswith("retry:")
        or line.startswith(":")
        or line.startswith(" ")
    )


def sse_event_has_non_activity_lines(lines: SSEEventLines) -> bool:
    """Return True if any event line violates the SSE field/comment/continuation format."""
    return any(ln and not is_sse_activity_line(ln) for ln in lines)


def is_done_data_line(line: str) -> bool:
    """
    Accept: "data:[DONE]" / "data: [DONE]" / "data:    [DONE]" (tolerate whitespace)
    """
    if not line.startswith("data:"):
        return False
    return line[len("data:"):].strip() == "[DONE]"


async def read_next_sse_event(
    aiter: AsyncIterator[str],
    *,
    timeout_s: float | None = None,
) -> SSEEventLines | None:
    """
    Read one SSE event (blank-line delimited) from an async line iterator.

    Returns:
    - list[str]: event lines excluding the terminating blank line (may be empty for keepalive)
    - None: EOF (no more data)
    """
    lines: SSEEventLines = []
    while True:
        try:
            if timeout_s is None:
                raw = await aiter.__anext__()  # type: ignore[attr-defined]
            else:
                raw = await asyncio.wait_for(
                    aiter.__anext__(), timeout=timeout_s  # type: ignore[attr-defined]
                )
        except StopAsyncIteration:
            if lines:
                return lines
            return None

        line = raw.rstrip("\r\n")
        if line == "":
            return lines
        lines.append(line)


def extract_content_fragments(obj: Any) -> List[str]:
    """Extract content fragments from an OpenAI chunk (delta or message)."""
    out: List[str] = []
    if not isinstance(obj, dict):
        return out

    for ch in (obj.get("choices") or []):
        if not isinstance(ch, dict):
            continue
        d = ch.get("delta") or ch.get("message") or {}
        if isinstance(d, dict):
            c = d.get("content")
            if isinstance(c, str) and c:
                out.append(c)
    return out


def extract_finish_reason(obj: Any) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    for ch in (obj.get("choices") or []):
        if isinstance(ch, dict) and isinstance(ch.get("finish_reason"), str):
            return _FINISH_REASONS.get(ch["finish_reason"], "other")
    return None


def extract_usage(obj: Any) -> Optional[Dict[str, int]]:
    if not isinstance(obj, dict):
        return None
    usage = obj.get("usage")
    if not isinstance(usage, dict):
        return None
    try:
        return {
            "promptTokens": int(usage.get("prompt_tokens") or 0),
            "completionTokens": int(usage.get("completion_tokens") or 0),
        }
    except (TypeError, ValueError):
        return None


def _event_json(lines: SSEEventLines) -> Tuple[Optional[Dict[str, Any]], bool]:
    """Return (parsed JSON payload or None, is_done)."""
    if any(is_done_data_line(ln) for ln in lines):
        return None, True
    data = sse_event_data_text(lines).strip()
    if not data:
        return None, False
    obj = json.loads(data)
    if not isinstance(obj, dict):
        raise ValueError("SSE data is not a JSON object")
    return obj, False


async def peek_first_sse_choices(
    aiter: AsyncIterator[str],
) -> Tuple[bool, Dict[str, Any] | None, str]:
    """
    Read up to the first SSE event carrying JSON `data:` and check it is usable.

    Failure (-> failover) when:
    - the stream ends before any JSON event
    - the payload is an error object or has no choices[]
    - choices[].finish_reason == "error"
    """
    try:
        while True:
            ev = await read_next_sse_event(aiter)
            if ev is None:
                return False, None, "early-eof: no SSE events"
            if not ev:
                continue
            if sse_event_has_non_activity_lines(ev):
                return False, None, "non-sse-line: upstream did not answer with SSE"

            try:
                obj, done = _event_json(ev)
            except (json.JSONDecodeError, ValueError):
                return False, None, "bad-json: first data line is not valid JSON"
            if done:
                return False, None, "early-done: [DONE] before any choices"
            if obj is None:
                continue  # keepalive / comments

            if obj.get("error") is not None:
                return False, None, f"upstream-error: {obj.get('error')}"
            choices = obj.get("choices")
            if not isinstance(choices, list) or not choices:
                return False, None, "no-choices: first JSON chunk has no choices[]"
            for ch in choices:
                if isinstance(ch, dict) and (ch.get("error") is not None or ch.get("finish_reason") == "error"):
                    return False, None, "choice-error: choices[] reports an error"
            return True, obj, ""
    except Exception as e:
        return False, None, f"peek-exception: {type(e).__name__}: {e}"


async def frame_openai_sse(
    aiter: AsyncIterator[str],
    first_chunk: Dict[str, Any],
    *,
    backend: str,
    idle_timeout_s: float,
) -> AsyncGenerator[bytes, None]:
    """
    Convert an OpenAI chat-completion SSE stream into framed records, one
    text record per content delta, ending with completion + terminator.

    A stall longer than idle_timeout_s, a malformed event, an error event or
    EOF without [DONE] raises, so the transport aborts instead of delivering a
    silently truncated reply.
    """
    finish_reason = "stop"
    usage: Optional[Dict[str, int]] = None

    def absorb(obj: Dict[str, Any]) -> List[bytes]:
        nonlocal finish_reason, usage
        out = [frame_text(frag) for frag in extract_content_fragments(obj)]
        fr = extract_finish_reason(obj)
        if fr is not None:
            finish_reason = fr
        u = extract_usage(obj)
        if u is not None:
            usage = u
        return out

    for b in absorb(first_chunk):
        yield b

    while True:
        try:
            ev = await read_next_sse_event(aiter, timeout_s=idle_timeout_s)
        except asyncio.TimeoutError:
            log.warning("Upstream SSE stalled (>%.1fs) backend=%s", idle_timeout_s, backend)
            raise UpstreamTimeoutError(backend, f"stream idle for more than {idle_timeout_s:g}s")

        if ev is None:
            log.warning("Upstream SSE ended before [DONE] backend=%s", backend)
            raise UpstreamGenericError(backend, "stream ended before [DONE]")
        if not ev:
            continue
        if sse_event_has_non_activity_lines(ev):
            log.warning("Non-SSE line from upstream backend=%s line=%r", backend, ev[0][:200])
            raise UpstreamGenericError(backend, "non-SSE line in upstream stream")

        try:
            obj, done = _event_json(ev)
        except (json.JSONDecodeError, ValueError) as e:
            raise UpstreamGenericError(backend, f"bad JSON in upstream stream: {e}") from e
        if done:
            break
        if obj is None:
            continue
        if obj.get("error") is not None:
            raise classify_error_text(backend, str(obj.get("error")))

        for b in absorb(obj):
            yield b

    yield frame_finish(finish_reason, usage)
    yield frame_terminator()
