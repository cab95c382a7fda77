"""Turn a provider's raw output into a uniform ``chunk`` / ``done`` sequence.

Line-delimited streams are buffered: complete lines are decoded with the
provider's ``extract_delta`` and the incomplete tail waits for the next read.
OpenAI-style servers wrap each line as a Server-Sent-Events ``data:`` field,
so that prefix, ``:`` comments and the ``[DONE]`` sentinel are handled here.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Literal

from .errors import ParseError, ServerError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
_SSE_DATA_PREFIX = "data:"


@dataclass(frozen=True)
class NormalizedEvent:
    kind: Literal["chunk", "done"]
    content: str = ""


DeltaExtractor = Callable[[dict[str, Any]], "str | None"]


def _stream_error(payload: dict[str, Any]) -> ServerError | None:
    error = payload.get("error")
    if error is None:
        return None
    if isinstance(error, dict):
        message = error.get("message")
        code = error.get("code")
        status = code if isinstance(code, int) and not isinstance(code, bool) and code >= 400 else 502
        return ServerError(status, message if isinstance(message, str) and message else None)
    return ServerError(502, str(error) or None)


def decode_line(line: str, extract_delta: DeltaExtractor) -> str | None:
    """Return the text delta carried by one stream line, or ``None`` to skip it.

    Raises ``ParseError`` for a line that is not JSON and ``ServerError`` for
    an in-band error object.
    """
    stripped = line.strip()
    if not stripped or stripped.startswith(":"):
        return None
    if stripped.startswith(_SSE_DATA_PREFIX):
        stripped = stripped[len(_SSE_DATA_PREFIX):].strip()
    elif stripped.startswith(("event:", "id:", "retry:")):
        return None
    if not stripped or stripped == DONE_SENTINEL:
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise ParseError(f"malformed stream line: {stripped[:200]!r}") from exc
    if not isinstance(payload, dict):
        raise ParseError(f"unexpected stream payload: {stripped[:200]!r}")
    error = _stream_error(payload)
    if error is not None:
        raise error
    return extract_delta(payload)


class LineBuffer:
    """Accumulates text and hands back complete lines."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> list[str]:
        self._pending += text
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def drain(self) -> str:
        tail, self._pending = self._pending, ""
        return tail


def _decode_or_skip(line: str, extract_delta: DeltaExtractor) -> str | None:
    try:
        return decode_line(line, extract_delta)
    except ParseError as exc:
        logger.warning("stream parse skipped detail=%s", exc.message)
        return None


async def normalize_lines(
    raw: AsyncIterable[str],
    extract_delta: DeltaExtractor,
) -> AsyncIterator[NormalizedEvent]:
    buffer = LineBuffer()
    async for text in raw:
        for line in buffer.feed(text):
            delta = _decode_or_skip(line, extract_delta)
            if delta:
                yield NormalizedEvent("chunk", delta)
    tail = buffer.drain()
    if tail.strip():
        delta = _decode_or_skip(tail, extract_delta)
        if delta:
            yield NormalizedEvent("chunk", delta)
    yield NormalizedEvent("done")


async def normalize_text(raw: AsyncIterable[str]) -> AsyncIterator[NormalizedEvent]:
    async for text in raw:
        if text:
            yield NormalizedEvent("chunk", text)
    yield NormalizedEvent("done")


def normalize(
    raw: AsyncIterable[str],
    *,
    framing: str,
    extract_delta: DeltaExtractor,
) -> AsyncIterator[NormalizedEvent]:
    if framing == "text":
        return normalize_text(raw)
    if framing == "lines":
        return normalize_lines(raw, extract_delta)
    raise ValueError(f"unknown stream framing '{framing}'")
