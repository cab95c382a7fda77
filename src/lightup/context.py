"""Conversation context merging and the key-value store it is persisted in."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Protocol

from .types import ConversationContext, Settings

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"
CONVERSATION_CONTEXT_KEY = "conversationContext"


def merge_contexts(
    persisted: ConversationContext | None,
    incoming: ConversationContext | None,
) -> ConversationContext:
    """Combine stored history with a follow-up's local context.

    Histories are concatenated in order; incoming entities whose name is
    already known are dropped; the incoming active entity wins when set.
    """
    persisted = persisted or ConversationContext()
    incoming = incoming or ConversationContext()
    known = {entity.name for entity in persisted.entities}
    entities = list(persisted.entities)
    for entity in incoming.entities:
        if entity.name in known:
            continue
        known.add(entity.name)
        entities.append(entity)
    return ConversationContext(
        history=[*persisted.history, *incoming.history],
        entities=entities,
        active_entity=incoming.active_entity or persisted.active_entity,
    )


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...


class InMemoryStore:
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value


class JsonFileStore:
    """Key-value store persisted as one JSON object on disk."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock: asyncio.Lock | None = None

    def _read(self) -> dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError(f"store file {self.path} does not hold a JSON object")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False)
        os.replace(tmp_path, self.path)

    async def get(self, key: str) -> Any:
        return self._read().get(key)

    async def set(self, key: str, value: Any) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)


async def load_settings(store: KeyValueStore | None) -> Settings | None:
    if store is None:
        return None
    raw = await store.get(SETTINGS_KEY)
    if not raw:
        return None
    if isinstance(raw, Settings):
        return raw
    return Settings.model_validate(raw)


async def load_conversation_context(store: KeyValueStore | None) -> ConversationContext | None:
    if store is None:
        return None
    raw = await store.get(CONVERSATION_CONTEXT_KEY)
    if not raw:
        return None
    if isinstance(raw, ConversationContext):
        return raw
    try:
        return ConversationContext.model_validate(raw)
    except ValueError as exc:
        logger.warning("stored conversation context ignored detail=%s", exc)
        return None
