import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, ClassVar, Dict, List, Literal

import httpx

from ..config import ProviderDef
from ..errors import Aborted, NetworkError, ServerError
from ..registry import CancelHandle
from ..types import Settings

logger = logging.getLogger(__name__)

Framing = Literal["lines", "text"]


def http_error_detail(response: httpx.Response) -> str | None:
    message: str | None = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        payload = payload[0]
    if isinstance(payload, dict):
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                message = error_message
        elif isinstance(error_field, str) and error_field:
            message = error_field
        if message is None:
            for key in ("message", "detail"):
                nested = payload.get(key)
                if isinstance(nested, str) and nested:
                    message = nested
                    break
    if message is None:
        text = response.text
        if text:
            message = text.strip()[:500]
    if message is None:
        reason = response.reason_phrase
        if reason:
            message = reason
    return message


async def raise_for_status(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    await response.aread()
    raise ServerError(response.status_code, http_error_detail(response))


@asynccontextmanager
async def translate_transport_errors() -> AsyncIterator[None]:
    try:
        yield
    except httpx.TransportError as exc:
        raise NetworkError(str(exc) or exc.__class__.__name__) from exc


def ensure_not_cancelled(cancel: CancelHandle | None) -> None:
    if cancel is not None and cancel.cancelled:
        raise Aborted("request cancelled")


class BaseProvider:
    """One LLM backend.

    ``send`` yields raw response text; ``framing`` tells the normalizer whether
    that text is line-delimited JSON to be decoded with ``extract_delta`` or
    already plain deltas.
    """

    framing: ClassVar[Framing] = "lines"
    needs_cleaning: ClassVar[bool] = False

    def __init__(self, defn: ProviderDef):
        self.defn = defn
        self.model = defn.model

    def resolve_model(self, settings: Settings) -> str:
        return self.defn.model

    def extract_delta(self, payload: dict[str, Any]) -> str | None:
        raise NotImplementedError

    def send(
        self,
        messages: List[dict[str, str]],
        *,
        max_tokens: int,
        settings: Settings,
        temperature: float = 0.5,
        cancel: CancelHandle | None = None,
    ) -> AsyncIterator[str]:
        raise NotImplementedError


from .gemini import GeminiProvider
from .openai import BasicProvider, LocalProvider, OpenAICompatProvider, OpenAIProvider
from .xai import XAIProvider


class ProviderRegistry:
    _PROVIDER_FACTORIES: dict[str, type[BaseProvider]] = {
        "basic": BasicProvider,
        "openai_compat": LocalProvider,
        "openai": OpenAIProvider,
        "gemini": GeminiProvider,
        "xai": XAIProvider,
    }

    def __init__(self, providers: Dict[str, ProviderDef]):
        self.providers: Dict[str, BaseProvider] = {}
        for name, d in providers.items():
            provider_type_raw = d.type
            provider_type = provider_type_raw if provider_type_raw is not None else name

            if isinstance(provider_type_raw, str) and not provider_type_raw.strip():
                raise ValueError(
                    f"Unknown provider type '<missing>' for provider '{name}'"
                )

            factory = self._PROVIDER_FACTORIES.get(provider_type)
            if factory is None:
                raise ValueError(
                    f"Unknown provider type '{provider_type}' for provider '{name}'"
                )
            self.providers[name] = factory(d)

    def get(self, name: str) -> BaseProvider:
        return self.providers[name]

    def names(self) -> list[str]:
        return sorted(self.providers)


__all__ = [
    "BaseProvider",
    "BasicProvider",
    "Framing",
    "GeminiProvider",
    "LocalProvider",
    "OpenAICompatProvider",
    "OpenAIProvider",
    "ProviderRegistry",
    "XAIProvider",
    "ensure_not_cancelled",
    "http_error_detail",
    "raise_for_status",
    "translate_transport_errors",
]
