from __future__ import annotations

from typing import Dict, List

from .types import ConversationContext, Mode, ProcessTextRequest, Settings

DEFAULT_FROM_LANGUAGE = "en"
DEFAULT_TO_LANGUAGE = "es"

SYSTEM_PROMPTS: Dict[str, str] = {
    "explain": (
        "You are a concise expert who explains texts clearly. "
        "Keep explanations under 1500 tokens. Always complete your thoughts."
    ),
    "summarize": "You are a concise summarizer. Create clear, brief summaries focusing on key points.",
    "analyze": (
        "You are an analytical expert. "
        "Provide thorough analysis of the key aspects and implications."
    ),
    "translate": "You are a professional translator. Reply with the translation only.",
    "free": "You are a helpful assistant. Answer clearly and concisely.",
}

USER_PROMPTS: Dict[str, str] = {
    "explain": "Explain the following text:",
    "summarize": "Summarize the following text:",
    "analyze": "Analyze the following text:",
    "free": "",
}

TRANSLATE_PROMPT = "Translate the following text from ${fromLanguage} to ${toLanguage}:"

FOLLOW_UP_HISTORY_TURNS = 2


def _fill(template: str, **values: str) -> str:
    for name, value in values.items():
        template = template.replace("${" + name + "}", value)
    return template


def system_prompt(mode: Mode, settings: Settings) -> str:
    custom = settings.custom_prompts
    if custom is not None and custom.system_prompts.get(mode):
        return custom.system_prompts[mode]
    return SYSTEM_PROMPTS[mode]


def _languages(settings: Settings) -> tuple[str, str]:
    translation = settings.translation_settings
    if translation is None:
        return DEFAULT_FROM_LANGUAGE, DEFAULT_TO_LANGUAGE
    return (
        translation.from_language or DEFAULT_FROM_LANGUAGE,
        translation.to_language or DEFAULT_TO_LANGUAGE,
    )


def follow_up_prompt(text: str, context: ConversationContext | None, fallback: str | None) -> str:
    """Recent turns and the active entity inline, followed by the question."""
    lines: List[str] = []
    if context is not None:
        for turn in context.history[-FOLLOW_UP_HISTORY_TURNS:]:
            lines.append(f"{turn.role}: {turn.content}")
        if context.active_entity is not None:
            lines.append(f"Currently discussing: {context.active_entity.name}")
    if not lines and fallback:
        lines.append(fallback)
    background = "\n".join(lines)
    return f"Context from previous conversation:\n{background}\n\nFollow-up question:\n{text}"


def user_prompt(request: ProcessTextRequest, settings: Settings, context: ConversationContext | None = None) -> str:
    if request.is_follow_up:
        return follow_up_prompt(request.text, context, request.context)
    mode = request.mode
    custom = settings.custom_prompts
    custom_template = custom.user_prompts.get(mode) if custom is not None else None
    if mode == "translate":
        from_language, to_language = _languages(settings)
        if custom_template:
            return _fill(custom_template, fromLanguage=from_language, toLanguage=to_language, text=request.text)
        header = _fill(TRANSLATE_PROMPT, fromLanguage=from_language, toLanguage=to_language)
        return f"{header}\n\n{request.text}"
    if custom_template:
        return _fill(custom_template, text=request.text)
    header = USER_PROMPTS[mode]
    return f"{header}\n{request.text}" if header else request.text


def build_messages(
    request: ProcessTextRequest,
    settings: Settings,
    context: ConversationContext | None = None,
) -> List[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt(request.mode, settings)},
        {"role": "user", "content": user_prompt(request, settings, context)},
    ]
