import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Any, Optional

from .batcher import ChunkBatcher, Scheduler
from .cleaner import MarkdownCleaner
from .config import GatewayDefaults
from .context import KeyValueStore, load_conversation_context, load_settings, merge_contexts
from .errors import (
    Aborted,
    ConfigurationInvalid,
    GatewayError,
    RateLimited,
    ServerError,
    is_retryable,
    user_message,
)
from .metrics import MetricsLogger
from .normalizer import normalize
from .prompts import build_messages
from .providers import BaseProvider, ProviderRegistry, ensure_not_cancelled
from .rate_limiter import SlidingWindowLimiter
from .registry import CancelHandle, ConnectionRegistry
from .types import (
    ConversationContext,
    ErrorEvent,
    ProcessTextRequest,
    Settings,
    chunk_event,
    done_event,
    error_event,
)

logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "Extension not configured. Please open the options page and choose a model."
OPENAI_KEY_PREFIXES = ("sk-", "org-")
OPENAI_KEY_MIN_LENGTH = 32


def _log_dispatch_event(
    level: int,
    *,
    event: str,
    req_id: str,
    provider: str | None,
    connection: str,
    detail: str | None = None,
) -> None:
    provider_value = provider or "unknown"
    message = f"dispatch {event} req_id={req_id} provider={provider_value} connection={connection}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


def _blank(value: str | None) -> bool:
    return not value or not value.strip()


def is_valid_openai_key(key: str) -> bool:
    key = key.strip()
    return key.startswith(OPENAI_KEY_PREFIXES) or len(key) >= OPENAI_KEY_MIN_LENGTH


def validate_settings(settings: Settings) -> None:
    """Fail fast when the backend selected by ``model_type`` lacks what it needs."""
    model_type = settings.model_type
    if model_type == "local" and _blank(settings.server_url):
        raise ConfigurationInvalid("Local server URL is not configured. Please set it in the extension options.")
    if model_type == "openai":
        if _blank(settings.api_key):
            raise ConfigurationInvalid("OpenAI API key is not configured. Please add it in the extension options.")
        if not is_valid_openai_key(settings.api_key or ""):
            raise ConfigurationInvalid("Invalid OpenAI API key format. Please check your key in the extension options.")
    if model_type == "gemini" and _blank(settings.gemini_api_key):
        raise ConfigurationInvalid("Gemini API key is not configured. Please add it in the extension options.")
    if model_type == "xai" and _blank(settings.xai_api_key):
        raise ConfigurationInvalid("xAI API key is not configured. Please add it in the extension options.")


def credential_for(settings: Settings) -> str | None:
    """The value requests are rate limited by; ``None`` for the credential-free backend."""
    model_type = settings.model_type
    if model_type == "local":
        return (settings.server_url or "").strip()
    if model_type == "openai":
        return (settings.api_key or "").strip()
    if model_type == "gemini":
        return (settings.gemini_api_key or "").strip()
    if model_type == "xai":
        return (settings.xai_api_key or "").strip()
    return None


@dataclass
class _Trace:
    provider: str | None = None
    outcome: str = "cancelled"
    status: int | None = None
    error: str | None = None
    chunks: int = 0


class Dispatcher:
    """Runs one request from settings validation to its terminal event."""

    def __init__(
        self,
        providers: ProviderRegistry,
        *,
        limiter: Optional[SlidingWindowLimiter] = None,
        registry: Optional[ConnectionRegistry] = None,
        store: Optional[KeyValueStore] = None,
        metrics: Optional[MetricsLogger] = None,
        defaults: GatewayDefaults = GatewayDefaults(),
        batch_interval_ms: float = 5.0,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.providers = providers
        self.limiter = limiter if limiter is not None else SlidingWindowLimiter()
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.store = store
        self.metrics = metrics
        self.defaults = defaults
        self.batch_interval_ms = batch_interval_ms
        self.scheduler = scheduler

    async def resolve_settings(self, request: ProcessTextRequest) -> Settings:
        if request.settings is not None:
            return request.settings
        stored = await load_settings(self.store)
        if stored is None:
            raise ConfigurationInvalid(NOT_CONFIGURED_MESSAGE)
        return stored

    def provider_for(self, settings: Settings) -> BaseProvider:
        try:
            return self.providers.get(settings.model_type)
        except KeyError as exc:
            raise ConfigurationInvalid(f"Model type '{settings.model_type}' is not available on this gateway.") from exc

    async def conversation_context(self, request: ProcessTextRequest) -> ConversationContext | None:
        if not request.is_follow_up:
            return request.conversation_context
        persisted = await load_conversation_context(self.store)
        if request.conversation_context is None:
            return persisted
        return merge_contexts(persisted, request.conversation_context)

    def _max_tokens(self, settings: Settings) -> int:
        if "max_tokens" in settings.model_fields_set:
            return settings.max_tokens
        return self.defaults.max_tokens

    def _temperature(self, settings: Settings) -> float:
        if settings.temperature is not None:
            return settings.temperature
        return self.defaults.temperature

    async def stop(self, connection_id: str) -> bool:
        return await self.registry.cancel(connection_id)

    async def dispatch(self, request: ProcessTextRequest) -> AsyncGenerator[Any, None]:
        """Yield ``chunk`` events followed by exactly one ``done`` or ``error``.

        Nothing is yielded once the request's connection has been cancelled.
        """
        start = time.perf_counter()
        req_id = str(request.id)
        key = request.key
        trace = _Trace(provider=request.settings.model_type if request.settings is not None else None)
        # Registered before the first await so a stop arriving during the store reads is not lost.
        connection = await self.registry.register(key)
        handle = connection.cancel_handle
        producer_task: Optional[asyncio.Task[None]] = None
        rejected = False
        try:
            try:
                settings = await self.resolve_settings(request)
                ensure_not_cancelled(handle)
                trace.provider = settings.model_type
                validate_settings(settings)
                provider = self.provider_for(settings)
                credential = credential_for(settings)
                if credential is not None:
                    self.limiter.check(credential)
                context = await self.conversation_context(request)
            except GatewayError as exc:
                if handle.cancelled:
                    return
                rejected = True
                event = self._error_event(request, exc, trace)
                trace.outcome = "error"
                _log_dispatch_event(
                    logging.WARNING,
                    event="rejected",
                    req_id=req_id,
                    provider=trace.provider,
                    connection=key,
                    detail=exc.message,
                )
                yield event
                return
            if handle.cancelled:
                return

            messages = build_messages(request, settings, context)
            queue: asyncio.Queue[Any] = asyncio.Queue()
            handle.on_cancel(lambda: queue.put_nowait(None))
            producer_task = asyncio.create_task(
                self._produce(request, settings, provider, messages, handle, queue, trace)
            )
            handle.attach(producer_task)
            _log_dispatch_event(logging.INFO, event="start", req_id=req_id, provider=trace.provider, connection=key)
            while True:
                event = await queue.get()
                if event is None or handle.cancelled:
                    break
                if event.type == "chunk":
                    trace.chunks += 1
                yield event
                if event.type in ("done", "error"):
                    trace.outcome = event.type
                    break
        finally:
            if producer_task is not None:
                if not producer_task.done():
                    producer_task.cancel()
                await asyncio.gather(producer_task, return_exceptions=True)
            self.registry.release(key, connection)
            if not rejected:
                self._log_outcome(trace, req_id=req_id, connection=key)
            await self._record(request, trace, start)

    async def _produce(
        self,
        request: ProcessTextRequest,
        settings: Settings,
        provider: BaseProvider,
        messages: list[dict[str, str]],
        handle: CancelHandle,
        queue: "asyncio.Queue[Any]",
        trace: _Trace,
    ) -> None:
        batcher = ChunkBatcher(
            lambda text: queue.put_nowait(chunk_event(request, text)),
            interval_ms=self.batch_interval_ms,
            scheduler=self.scheduler,
        )
        handle.on_cancel(batcher.cancel)
        cleaner = MarkdownCleaner() if provider.needs_cleaning else None
        try:
            raw = provider.send(
                messages,
                max_tokens=self._max_tokens(settings),
                settings=settings,
                temperature=self._temperature(settings),
                cancel=handle,
            )
            async for item in normalize(raw, framing=provider.framing, extract_delta=provider.extract_delta):
                if item.kind == "chunk":
                    for piece in cleaner.feed(item.content) if cleaner is not None else [item.content]:
                        batcher.push(piece)
                    continue
                if cleaner is not None:
                    for piece in cleaner.finish():
                        batcher.push(piece)
                batcher.finish()
                queue.put_nowait(done_event(request))
                return
        except Aborted:
            return
        except GatewayError as exc:
            batcher.finish()
            queue.put_nowait(self._error_event(request, exc, trace))
        except Exception as exc:
            logger.exception("dispatch provider crashed req_id=%s", request.id)
            batcher.finish()
            trace.error = str(exc) or exc.__class__.__name__
            queue.put_nowait(error_event(request, user_message(exc), retryable=is_retryable(exc)))
        finally:
            batcher.cancel()
            queue.put_nowait(None)

    def _error_event(self, request: ProcessTextRequest, exc: GatewayError, trace: _Trace) -> ErrorEvent:
        trace.error = exc.message
        if isinstance(exc, ServerError):
            trace.status = exc.status
        retry_after = exc.retry_after if isinstance(exc, RateLimited) else None
        return error_event(request, user_message(exc), retryable=is_retryable(exc), retry_after=retry_after)

    def _log_outcome(self, trace: _Trace, *, req_id: str, connection: str) -> None:
        if trace.outcome == "done":
            _log_dispatch_event(
                logging.INFO,
                event="done",
                req_id=req_id,
                provider=trace.provider,
                connection=connection,
                detail=f"chunks={trace.chunks}",
            )
        elif trace.outcome == "error":
            _log_dispatch_event(
                logging.ERROR,
                event="failed",
                req_id=req_id,
                provider=trace.provider,
                connection=connection,
                detail=trace.error,
            )
        else:
            _log_dispatch_event(
                logging.INFO,
                event="cancelled",
                req_id=req_id,
                provider=trace.provider,
                connection=connection,
            )

    async def _record(self, request: ProcessTextRequest, trace: _Trace, start: float) -> None:
        if self.metrics is None:
            return
        record = {
            "req_id": str(request.id),
            "ts": time.time(),
            "mode": request.mode,
            "provider": trace.provider,
            "latency_ms": int((time.perf_counter() - start) * 1000),
            "ok": trace.outcome == "done",
            "status": trace.outcome,
            "http_status": trace.status,
            "error": trace.error,
            "chunks": trace.chunks,
        }
        try:
            await self.metrics.write(record)
        except OSError as exc:
            logger.warning("metrics write failed req_id=%s detail=%s", request.id, exc)
