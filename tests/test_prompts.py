from src.lightup.prompts import SYSTEM_PROMPTS, build_messages, user_prompt
from src.lightup.types import (
    ConversationContext,
    CustomPrompts,
    Entity,
    HistoryTurn,
    ProcessTextRequest,
    Settings,
    TranslationSettings,
)


def _request(**overrides: object) -> ProcessTextRequest:
    data: dict[str, object] = {"id": 1, "text": "The sky is blue.", "mode": "explain"}
    data.update(overrides)
    return ProcessTextRequest.model_validate(data)


def test_explain_uses_default_templates() -> None:
    messages = build_messages(_request(), Settings())

    assert messages[0] == {"role": "system", "content": SYSTEM_PROMPTS["explain"]}
    assert messages[1]["role"] == "user"
    assert messages[1]["content"].endswith("\nThe sky is blue.")


def test_translate_defaults_to_english_to_spanish() -> None:
    prompt = user_prompt(_request(mode="translate"), Settings())

    assert "from en to es" in prompt
    assert prompt.endswith("The sky is blue.")


def test_translate_uses_language_pair_and_custom_template() -> None:
    settings = Settings(
        translation_settings=TranslationSettings(from_language="fr", to_language="de"),
        custom_prompts=CustomPrompts(user_prompts={"translate": "${fromLanguage}->${toLanguage}: ${text}"}),
    )

    assert user_prompt(_request(mode="translate"), settings) == "fr->de: The sky is blue."


def test_custom_system_prompt_overrides_default() -> None:
    settings = Settings(custom_prompts=CustomPrompts(system_prompts={"summarize": "Be brief."}))

    messages = build_messages(_request(mode="summarize"), settings)

    assert messages[0]["content"] == "Be brief."


def test_follow_up_includes_last_two_turns_and_active_entity() -> None:
    context = ConversationContext(
        history=[
            HistoryTurn(role="user", content="first"),
            HistoryTurn(role="assistant", content="second"),
            HistoryTurn(role="user", content="third"),
        ],
        active_entity=Entity(name="Rayleigh scattering"),
    )

    prompt = user_prompt(_request(is_follow_up=True, text="Why?"), Settings(), context)

    assert "first" not in prompt
    assert "assistant: second" in prompt
    assert "user: third" in prompt
    assert "Currently discussing: Rayleigh scattering" in prompt
    assert prompt.endswith("Follow-up question:\nWhy?")


def test_follow_up_without_history_falls_back_to_request_context() -> None:
    prompt = user_prompt(_request(is_follow_up=True, text="Why?", context="earlier answer"), Settings())

    assert "earlier answer" in prompt
