from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator
from typing import Any, List

import httpx

from ..errors import ServerError
from ..registry import CancelHandle
from ..types import Settings
from . import BaseProvider, ensure_not_cancelled, raise_for_status, translate_transport_errors

_WORD_BOUNDARY = re.compile(r"(?<=\s)(?=\S)")


def word_groups(text: str, size: int) -> list[str]:
    """Split ``text`` into runs of ``size`` words; joining the runs gives ``text`` back."""
    if not text:
        return []
    words = _WORD_BOUNDARY.split(text)
    step = max(1, size)
    return ["".join(words[index:index + step]) for index in range(0, len(words), step)]


class GeminiProvider(BaseProvider):
    """Hosted backend that only answers with a complete response.

    The full text is re-chunked into word groups with a short pause between
    them so callers see the same continuous delivery as a true stream.
    """

    framing = "text"

    def resolve_model(self, settings: Settings) -> str:
        return settings.gemini_model or self.defn.model

    def _build_request(
        self,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        settings: Settings,
        temperature: float,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        base = self.defn.base_url.strip().rstrip("/")
        url = f"{base}/models/{self.resolve_model(settings)}:generateContent"
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": (settings.gemini_api_key or "").strip(),
        }
        system_parts = [
            {"text": message["content"]} for message in messages if message.get("role") == "system"
        ]
        contents = [
            {
                "role": "model" if message.get("role") == "assistant" else "user",
                "parts": [{"text": message.get("content", "")}],
            }
            for message in messages
            if message.get("role") != "system"
        ]
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        return url, headers, payload

    def extract_delta(self, payload: dict[str, Any]) -> str | None:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return None
        first = candidates[0]
        if not isinstance(first, dict):
            return None
        content = first.get("content")
        if not isinstance(content, dict):
            return None
        parts = content.get("parts")
        if not isinstance(parts, list) or not parts:
            return None
        texts = [part.get("text") for part in parts if isinstance(part, dict)]
        joined = "".join(text for text in texts if isinstance(text, str))
        return joined or None

    async def send(
        self,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        settings: Settings,
        temperature: float = 0.5,
        cancel: CancelHandle | None = None,
    ) -> AsyncIterator[str]:
        url, headers, payload = self._build_request(
            messages,
            max_tokens=max_tokens,
            settings=settings,
            temperature=temperature,
        )
        async with translate_transport_errors():
            async with httpx.AsyncClient(timeout=self.defn.timeout) as client:
                response = await client.post(url, headers=headers, json=payload)
                await raise_for_status(response)
                data = response.json()
        ensure_not_cancelled(cancel)
        text = self.extract_delta(data) if isinstance(data, dict) else None
        if text is None:
            feedback = data.get("promptFeedback") if isinstance(data, dict) else None
            reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
            raise ServerError(502, f"response blocked: {reason}" if reason else "response contained no text")
        groups = word_groups(text, self.defn.chunk_words)
        delay = self.defn.chunk_delay_ms / 1000.0
        for index, group in enumerate(groups):
            ensure_not_cancelled(cancel)
            yield group
            if delay > 0 and index < len(groups) - 1:
                await asyncio.sleep(delay)
