import asyncio
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

from src.lightup.config import load_config
from src.lightup.dispatcher import Dispatcher
from src.lightup.metrics import MetricsLogger
from src.lightup.server import INVALID_ENVELOPE_MESSAGE, ApiKeyGuard, create_app

REPO_CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


class StubProvider:
    framing = "text"
    needs_cleaning = False

    def __init__(self, deltas: list[str], *, block: bool = False) -> None:
        self.deltas = deltas
        self.block = block
        self.cancelled = False

    def extract_delta(self, payload: dict[str, Any]) -> str | None:
        return None

    async def send(self, messages, *, max_tokens, settings, temperature=0.5, cancel=None):
        for delta in self.deltas:
            yield delta
        if self.block:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise


class StubRegistry:
    def __init__(self, providers: dict[str, Any]) -> None:
        self.providers = providers

    def get(self, name: str) -> Any:
        return self.providers[name]

    def names(self) -> list[str]:
        return sorted(self.providers)


def _client(provider: StubProvider) -> tuple[TestClient, Dispatcher]:
    dispatcher = Dispatcher(StubRegistry({"basic": provider}), metrics=MetricsLogger(None), batch_interval_ms=0)  # type: ignore[arg-type]
    app = create_app(load_config(str(REPO_CONFIG_DIR)), dispatcher=dispatcher, guard=ApiKeyGuard(frozenset()))
    return TestClient(app), dispatcher


def _process(request_id: Any, connection_id: str | None = None, **settings: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": request_id,
        "text": "The sky is blue.",
        "mode": "explain",
        "settings": {"modelType": "basic", **settings},
    }
    if connection_id is not None:
        payload["connectionId"] = connection_id
    return {"type": "PROCESS_TEXT", "payload": payload}


def _receive_until_terminal(ws: Any) -> list[dict[str, Any]]:
    frames: list[dict[str, Any]] = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame["type"] in ("done", "error"):
            return frames


def test_ping_gets_pong() -> None:
    client, _ = _client(StubProvider([]))
    with client, client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "PING"})
        assert ws.receive_json() == {"type": "PONG"}


def test_process_text_streams_chunks_then_done() -> None:
    client, dispatcher = _client(StubProvider(["The ", "sky ", "is ", "blue."]))
    with client, client.websocket_connect("/ws") as ws:
        ws.send_json(_process(5))
        frames = _receive_until_terminal(ws)

    assert frames[-1] == {"type": "done", "isFollowUp": False, "id": 5}
    chunks = [frame for frame in frames if frame["type"] == "chunk"]
    assert "".join(frame["content"] for frame in chunks) == "The sky is blue."
    assert len(dispatcher.registry) == 0


def test_configuration_error_is_sent_as_error_frame() -> None:
    client, _ = _client(StubProvider(["never"]))
    with client, client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "PROCESS_TEXT", "payload": {"id": "x", "text": "t", "settings": {"modelType": "openai"}}})
        frame = ws.receive_json()

    assert frame["type"] == "error"
    assert frame["id"] == "x"
    assert frame["retryable"] is False
    assert "OpenAI API key" in frame["error"]


def test_invalid_envelope_gets_error_frame_and_socket_stays_open() -> None:
    client, _ = _client(StubProvider([]))
    with client, client.websocket_connect("/ws") as ws:
        ws.send_text('{"type": "DANCE"}')
        assert ws.receive_json() == {"type": "error", "error": INVALID_ENVELOPE_MESSAGE, "retryable": False}
        ws.send_json({"type": "PING"})
        assert ws.receive_json() == {"type": "PONG"}


def test_stop_generation_cancels_connection_and_silences_it() -> None:
    provider = StubProvider(["first "], block=True)
    client, dispatcher = _client(provider)
    with client, client.websocket_connect("/ws") as ws:
        ws.send_json(_process(1, "C"))
        assert ws.receive_json()["type"] == "chunk"
        assert "C" in dispatcher.registry

        ws.send_json({"type": "STOP_GENERATION", "connectionId": "C"})
        ws.send_json({"type": "PING"})

        assert ws.receive_json() == {"type": "PONG"}
        assert "C" not in dispatcher.registry
    assert provider.cancelled is True


def test_disconnect_cancels_in_flight_requests() -> None:
    provider = StubProvider(["first "], block=True)
    client, dispatcher = _client(provider)
    with client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json(_process(1, "tab-7"))
            assert ws.receive_json()["type"] == "chunk"
    assert len(dispatcher.registry) == 0
    assert provider.cancelled is True
