from __future__ import annotations

from ..types import Settings
from .openai import OpenAICompatProvider


class XAIProvider(OpenAICompatProvider):
    """Reasoning backend streaming token deltas.

    Its raw deltas repeat phrases and break markdown, so the dispatcher routes
    them through the markdown cleaner.
    """

    needs_cleaning = True

    def headers(self, settings: Settings) -> dict[str, str]:
        headers = super().headers(settings)
        key = (settings.xai_api_key or "").strip()
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    def resolve_model(self, settings: Settings) -> str:
        return settings.grok_model or self.defn.model
