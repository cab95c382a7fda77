import json
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

from src.lightup.config import load_config
from src.lightup.dispatcher import Dispatcher
from src.lightup.metrics import MetricsLogger
from src.lightup.server import PROM_CONTENT_TYPE, ApiKeyGuard, create_app

REPO_CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


class StubProvider:
    framing = "text"
    needs_cleaning = False

    def __init__(self, deltas: list[str]) -> None:
        self.deltas = deltas

    def extract_delta(self, payload: dict[str, Any]) -> str | None:
        return None

    async def send(self, messages, *, max_tokens, settings, temperature=0.5, cancel=None):
        for delta in self.deltas:
            yield delta


class StubRegistry:
    def __init__(self, providers: dict[str, Any]) -> None:
        self.providers = providers

    def get(self, name: str) -> Any:
        return self.providers[name]

    def names(self) -> list[str]:
        return sorted(self.providers)


def _app(keys: frozenset[str] = frozenset(), origins: list[str] | None = None) -> Any:
    dispatcher = Dispatcher(
        StubRegistry({"basic": StubProvider(["Hello ", "there."])}),  # type: ignore[arg-type]
        metrics=MetricsLogger(None),
        batch_interval_ms=0,
    )
    return create_app(
        load_config(str(REPO_CONFIG_DIR)),
        dispatcher=dispatcher,
        guard=ApiKeyGuard(keys, "x-api-key"),
        allowed_origins=origins or [],
    )


def _sse_events(body: str) -> list[tuple[str, dict[str, Any]]]:
    events: list[tuple[str, dict[str, Any]]] = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def test_healthz_reports_backends_and_live_state() -> None:
    with TestClient(_app()) as client:
        response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "providers": ["basic"],
        "connections": 0,
        "rate_limited_credentials": 0,
    }


def test_process_streams_server_sent_events() -> None:
    with TestClient(_app()) as client:
        response = client.post(
            "/v1/process",
            json={"id": "sse-1", "text": "hi", "mode": "free", "settings": {"modelType": "basic"}},
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["x-lightup-request-id"] == "sse-1"
    events = _sse_events(response.text)
    assert events[-1] == ("done", {"type": "done", "isFollowUp": False, "id": "sse-1"})
    assert "".join(payload["content"] for name, payload in events if name == "chunk") == "Hello there."


def test_process_rejects_malformed_body() -> None:
    with TestClient(_app()) as client:
        response = client.post("/v1/process", json={"id": 1, "mode": "explain"})

    assert response.status_code == 422


def test_api_key_guard_protects_http_routes() -> None:
    with TestClient(_app(frozenset({"secret"}))) as client:
        rejected = client.get("/metrics")
        bearer = client.get("/metrics", headers={"Authorization": "Bearer secret"})
        process = client.post("/v1/process", json={"id": 1, "text": "x"})
        accepted = client.get("/metrics", headers={"x-api-key": "secret"})

    assert rejected.status_code == 401
    assert rejected.json() == {
        "error": {
            "message": "missing or invalid api key",
            "type": "authentication_error",
            "code": "invalid_api_key",
        }
    }
    assert bearer.status_code == 200
    assert process.status_code == 401
    assert accepted.status_code == 200
    assert accepted.headers["content-type"] == PROM_CONTENT_TYPE


def test_metrics_reflect_finished_requests() -> None:
    with TestClient(_app()) as client:
        client.post("/v1/process", json={"id": 1, "text": "x", "settings": {"modelType": "basic"}})
        response = client.get("/metrics")

    assert 'lightup_requests_total{provider="basic",mode="explain",status="done"} 1' in response.text


def test_cors_origins_are_applied() -> None:
    with TestClient(_app(origins=["chrome-extension://abc"])) as client:
        response = client.get("/healthz", headers={"Origin": "chrome-extension://abc"})

    assert response.headers["access-control-allow-origin"] == "chrome-extension://abc"
