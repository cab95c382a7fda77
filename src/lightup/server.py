import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from typing_extensions import TypedDict

from .config import LoadedConfig, config_dir_from_env, load_config, parse_env_list
from .context import KeyValueStore
from .dispatcher import Dispatcher
from .metrics import MetricsLogger
from .providers import ProviderRegistry
from .rate_limiter import SlidingWindowLimiter
from .registry import ConnectionRegistry
from .types import (
    PONG,
    PingEnvelope,
    ProcessTextRequest,
    StopGenerationEnvelope,
    event_to_wire,
    parse_envelope,
)

logger = logging.getLogger(__name__)

PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
INVALID_ENVELOPE_MESSAGE = "Invalid message. Expected PROCESS_TEXT, STOP_GENERATION or PING."


class _HealthResponse(TypedDict):
    status: str
    providers: list[str]
    connections: int
    rate_limited_credentials: int


def _make_error_body(*, message: str, error_type: str, code: str) -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type, "code": code}}


class ApiKeyGuard:
    def __init__(self, keys: frozenset[str], header: str = "x-api-key") -> None:
        self.keys = keys
        self.header = header

    @classmethod
    def from_env(cls) -> "ApiKeyGuard":
        keys = frozenset(parse_env_list(os.environ.get("LIGHTUP_INBOUND_API_KEYS", "")))
        return cls(keys, os.environ.get("LIGHTUP_API_KEY_HEADER", "x-api-key"))

    def require(self, req: Request) -> None:
        if not self.keys:
            return
        candidate = req.headers.get(self.header)
        if candidate is None:
            auth_header = req.headers.get("authorization")
            if auth_header and auth_header.startswith("Bearer "):
                candidate = auth_header[7:]
        if candidate and candidate in self.keys:
            return
        raise HTTPException(status_code=401, detail="missing or invalid api key")

    def rejection(self, req: Request) -> JSONResponse | None:
        try:
            self.require(req)
        except HTTPException as exc:
            logger.warning("api key rejected path=%s", req.url.path)
            body = _make_error_body(
                message=str(exc.detail),
                error_type="authentication_error",
                code="invalid_api_key",
            )
            return JSONResponse(body, status_code=exc.status_code)
        return None


def _sse_frame(event: Any) -> bytes:
    payload = event_to_wire(event)
    return f"event: {payload['type']}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def create_app(
    config: Optional[LoadedConfig] = None,
    *,
    store: Optional[KeyValueStore] = None,
    dispatcher: Optional[Dispatcher] = None,
    guard: Optional[ApiKeyGuard] = None,
    allowed_origins: Optional[list[str]] = None,
) -> FastAPI:
    cfg = config or load_config(config_dir_from_env())
    if dispatcher is None:
        dispatcher = Dispatcher(
            ProviderRegistry(cfg.providers),
            limiter=SlidingWindowLimiter.from_settings(cfg.gateway.rate_limit),
            registry=ConnectionRegistry(),
            store=store,
            metrics=MetricsLogger(cfg.gateway.metrics_dir),
            defaults=cfg.gateway.defaults,
            batch_interval_ms=cfg.gateway.batch_interval_ms,
        )
    guard = guard or ApiKeyGuard.from_env()
    if not guard.keys:
        logger.warning("HTTP api key protection disabled: LIGHTUP_INBOUND_API_KEYS is not set")
    metrics = dispatcher.metrics or MetricsLogger()
    dispatcher.metrics = metrics

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(
            dispatcher.limiter.sweep_forever(cfg.gateway.rate_limit.sweep_interval_s)
        )
        try:
            yield
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)

    app = FastAPI(title="lightup-gateway", lifespan=lifespan)
    app.state.config = cfg
    app.state.dispatcher = dispatcher

    origins = allowed_origins
    if origins is None:
        origins = parse_env_list(os.environ.get("LIGHTUP_CORS_ALLOW_ORIGINS", ""))
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/healthz")
    async def healthz() -> _HealthResponse:
        payload: _HealthResponse = {
            "status": "ok",
            "providers": dispatcher.providers.names(),
            "connections": len(dispatcher.registry),
            "rate_limited_credentials": len(dispatcher.limiter),
        }
        return payload

    @app.get("/metrics")
    async def metrics_endpoint(req: Request) -> Response:
        rejected = guard.rejection(req)
        if rejected is not None:
            return rejected
        return Response(metrics.render(), media_type=PROM_CONTENT_TYPE)

    @app.post("/v1/process")
    async def process(req: Request, body: ProcessTextRequest) -> Response:
        rejected = guard.rejection(req)
        if rejected is not None:
            return rejected

        async def event_source() -> AsyncIterator[bytes]:
            events = dispatcher.dispatch(body)
            try:
                async for event in events:
                    yield _sse_frame(event)
            finally:
                await events.aclose()

        return StreamingResponse(
            event_source(),
            media_type="text/event-stream",
            headers={"x-lightup-request-id": str(body.id)},
        )

    @app.websocket("/ws")
    async def gateway_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        send_lock = asyncio.Lock()
        started: dict[str, asyncio.Task[None]] = {}

        async def send(payload: dict[str, Any]) -> None:
            async with send_lock:
                await websocket.send_json(payload)

        async def forward(request: ProcessTextRequest) -> None:
            events = dispatcher.dispatch(request)
            try:
                async for event in events:
                    await send(event_to_wire(event))
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.info("socket closed mid-stream req_id=%s detail=%s", request.id, exc)
            finally:
                await events.aclose()

        def forget(key: str, task: asyncio.Task[None]) -> None:
            if started.get(key) is task:
                del started[key]

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    envelope = parse_envelope(raw)
                except ValidationError as exc:
                    logger.warning("invalid envelope detail=%s", exc.errors()[:1])
                    await send({"type": "error", "error": INVALID_ENVELOPE_MESSAGE, "retryable": False})
                    continue
                if isinstance(envelope, PingEnvelope):
                    await send(PONG)
                elif isinstance(envelope, StopGenerationEnvelope):
                    stopped = await dispatcher.stop(envelope.connection_id)
                    logger.info("stop requested connection=%s found=%s", envelope.connection_id, stopped)
                else:
                    request = envelope.payload
                    key = request.key
                    task = asyncio.create_task(forward(request))
                    started[key] = task
                    task.add_done_callback(lambda done, key=key: forget(key, done))
        except WebSocketDisconnect:
            logger.info("socket disconnected live=%d", len(started))
        finally:
            pending = dict(started)
            await dispatcher.registry.cancel_many(pending)
            for task in pending.values():
                task.cancel()
            await asyncio.gather(*pending.values(), return_exceptions=True)

    return app


app = create_app()
