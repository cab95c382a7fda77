from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

Mode = Literal["explain", "summarize", "analyze", "translate", "free"]
ModelType = Literal["basic", "local", "openai", "gemini", "xai"]


class _WireModel(BaseModel):
    """Base for payloads exchanged with the extension: camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
        extra="allow",
    )


class TranslationSettings(_WireModel):
    from_language: str = "en"
    to_language: str = "es"


class CustomPrompts(_WireModel):
    system_prompts: Dict[str, str] = Field(default_factory=dict)
    user_prompts: Dict[str, str] = Field(default_factory=dict)


class Settings(_WireModel):
    model_type: ModelType = "basic"
    server_url: Optional[str] = None
    api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    xai_api_key: Optional[str] = None
    max_tokens: int = Field(default=2048, ge=1)
    temperature: Optional[float] = None
    translation_settings: Optional[TranslationSettings] = None
    local_model: Optional[str] = None
    openai_model: Optional[str] = None
    gemini_model: Optional[str] = None
    grok_model: Optional[str] = None
    custom_prompts: Optional[CustomPrompts] = None


class HistoryTurn(_WireModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: float = 0.0


class Entity(_WireModel):
    name: str
    type: Optional[str] = None


class ConversationContext(_WireModel):
    history: List[HistoryTurn] = Field(default_factory=list)
    entities: List[Entity] = Field(default_factory=list)
    active_entity: Optional[Entity] = None


class ProcessTextRequest(_WireModel):
    model_config = ConfigDict(frozen=True)

    id: Union[str, int]
    text: str
    mode: Mode = "explain"
    is_follow_up: bool = False
    context: Optional[str] = None
    conversation_context: Optional[ConversationContext] = None
    settings: Optional[Settings] = None
    connection_id: Optional[str] = None

    @property
    def key(self) -> str:
        """Connection id this request is tracked under."""
        return self.connection_id or str(self.id)


class ChunkEvent(_WireModel):
    type: Literal["chunk"] = "chunk"
    content: str
    is_follow_up: bool = False
    id: Union[str, int]


class DoneEvent(_WireModel):
    type: Literal["done"] = "done"
    is_follow_up: bool = False
    id: Union[str, int]


class ErrorEvent(_WireModel):
    type: Literal["error"] = "error"
    error: str
    retryable: bool = False
    retry_after: Optional[int] = None
    is_follow_up: bool = False
    id: Union[str, int]


def chunk_event(request: ProcessTextRequest, content: str) -> ChunkEvent:
    return ChunkEvent(content=content, is_follow_up=request.is_follow_up, id=request.id)


def done_event(request: ProcessTextRequest) -> DoneEvent:
    return DoneEvent(is_follow_up=request.is_follow_up, id=request.id)


def error_event(
    request: ProcessTextRequest,
    message: str,
    *,
    retryable: bool = False,
    retry_after: int | None = None,
) -> ErrorEvent:
    return ErrorEvent(
        error=message,
        retryable=retryable,
        retry_after=retry_after,
        is_follow_up=request.is_follow_up,
        id=request.id,
    )


def event_to_wire(event: BaseModel) -> dict[str, Any]:
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProcessTextEnvelope(_WireModel):
    type: Literal["PROCESS_TEXT"]
    payload: ProcessTextRequest


class StopGenerationEnvelope(_WireModel):
    type: Literal["STOP_GENERATION"]
    connection_id: str


class PingEnvelope(_WireModel):
    type: Literal["PING"]


InboundEnvelope = Annotated[
    Union[ProcessTextEnvelope, StopGenerationEnvelope, PingEnvelope],
    Field(discriminator="type"),
]

_ENVELOPE_ADAPTER: TypeAdapter[Any] = TypeAdapter(InboundEnvelope)

PONG: dict[str, str] = {"type": "PONG"}


def parse_envelope(data: Any) -> ProcessTextEnvelope | StopGenerationEnvelope | PingEnvelope:
    if isinstance(data, (str, bytes)):
        return _ENVELOPE_ADAPTER.validate_json(data)
    return _ENVELOPE_ADAPTER.validate_python(data)

