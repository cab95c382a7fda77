from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, List
from urllib.parse import urlparse, urlunparse

import httpx

from ..errors import ConfigurationInvalid
from ..registry import CancelHandle
from ..types import Settings
from . import BaseProvider, ensure_not_cancelled, raise_for_status, translate_transport_errors


def _is_version_segment(segment: str) -> bool:
    if not segment:
        return False
    lowered = segment.lower()
    if not lowered.startswith("v"):
        return False
    suffix = lowered[1:]
    return bool(suffix) and suffix[0].isdigit()


def chat_completions_url(base_url: str) -> str:
    """Point ``base_url`` at ``.../v1/chat/completions`` unless it already is."""
    parsed = urlparse(base_url.strip())
    path_segments = [segment for segment in (parsed.path or "").split("/") if segment]
    lowered = [segment.lower() for segment in path_segments]
    if lowered[-2:] == ["chat", "completions"]:
        return urlunparse(parsed._replace(path="/" + "/".join(path_segments)))
    if lowered and lowered[-1] == "chat":
        path_segments.append("completions")
    else:
        if not path_segments or not _is_version_segment(path_segments[-1]):
            path_segments.append("v1")
        path_segments.extend(["chat", "completions"])
    return urlunparse(parsed._replace(path="/" + "/".join(path_segments)))


class OpenAICompatProvider(BaseProvider):
    """Streaming chat-completions backend speaking the OpenAI wire format."""

    def base_url(self, settings: Settings) -> str:
        return self.defn.base_url

    def headers(self, settings: Settings) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _build_chat_request(
        self,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        settings: Settings,
        temperature: float,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        raw_base = self.base_url(settings)
        if not raw_base or not raw_base.strip():
            raise ConfigurationInvalid(f"No server URL configured for '{self.defn.name}'")
        url = chat_completions_url(raw_base)
        payload: dict[str, Any] = {
            "model": self.resolve_model(settings),
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": True,
        }
        return url, self.headers(settings), payload

    def extract_delta(self, payload: dict[str, Any]) -> str | None:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        first = choices[0]
        if not isinstance(first, dict):
            return None
        delta = first.get("delta")
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str):
                return content
            return None
        text = first.get("text")
        if isinstance(text, str):
            return text
        return None

    async def send(
        self,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        settings: Settings,
        temperature: float = 0.5,
        cancel: CancelHandle | None = None,
    ) -> AsyncIterator[str]:
        url, headers, payload = self._build_chat_request(
            messages,
            max_tokens=max_tokens,
            settings=settings,
            temperature=temperature,
        )
        async with translate_transport_errors():
            async with httpx.AsyncClient(timeout=self.defn.timeout) as client:
                async with client.stream("POST", url, headers=headers, json=payload) as response:
                    await raise_for_status(response)
                    async for text in response.aiter_text():
                        ensure_not_cancelled(cancel)
                        if text:
                            yield text


class LocalProvider(OpenAICompatProvider):
    """User-hosted OpenAI-compatible server (LM Studio, llama.cpp, Ollama's /v1)."""

    def base_url(self, settings: Settings) -> str:
        return settings.server_url or ""

    def resolve_model(self, settings: Settings) -> str:
        return settings.local_model or self.defn.model


class OpenAIProvider(OpenAICompatProvider):
    def headers(self, settings: Settings) -> dict[str, str]:
        headers = super().headers(settings)
        key = (settings.api_key or "").strip()
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    def resolve_model(self, settings: Settings) -> str:
        return settings.openai_model or self.defn.model


class BasicProvider(OpenAICompatProvider):
    """Credential-free default backend; endpoint and model come from configuration only."""
