from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ValidationError

from llmgate.core.gateway.context import GatewayContext
from llmgate.core.protocol.envelopes import (
    REQUIRED_GENERATE_FIELDS,
    REQUIRED_PARAM_FIELDS,
    ChatMessage,
    CloseAck,
    GenerateAck,
    GenerateDone,
    GenerateStreamChunk,
    GenerateStreamDone,
    GenerationParameters,
    GetModelsDone,
    GetProvidersDone,
    InterruptAck,
    LoadAck,
    LoadDone,
    LoadRequest,
    RequestType,
)
from llmgate.core.providers.base import ProviderAdapter, StreamChunk
from llmgate.core.providers.registry import ProviderRegistry
from llmgate.core.runtime.errors import ErrorKind, classify_error, compact_error_summary
from llmgate.core.telemetry.logging import get_logger, redact
from llmgate.core.telemetry.tracing import TraceContext, trace_event

Sender = Callable[[BaseModel], Awaitable[None]]
CloseHook = Callable[[], Awaitable[None] | None]

logger = get_logger("llmgate.dispatcher")

VALID_TYPES = [t.value for t in RequestType]
EXAMPLE_GENERATE = {
    "type": "generate",
    "unique_request_id": "<id>",
    "messages": [{"role": "system", "content": "This is a system prompt"}, {"role": "user", "content": "hi", "name": "DEV"}],
    "params": {
        "model_id": "gpt-4o-mini",
        "character_name": "Mia",
        "temperature": 1.0,
        "max_output_length": 200,
        "stop_tokens": ["\r", "\n"],
        "timeout_ms": None,
    },
    "stream": False,
}


class Dispatcher:
    """Routes validated envelopes to their handler and writes every response through ``send``.

    Requests without a usable id or type never get a response because the sender could not
    correlate it; they are logged and dropped instead.
    """

    def __init__(self, registry: ProviderRegistry, send: Sender, *, on_close: CloseHook | None = None) -> None:
        self.registry = registry
        self._send = send
        self._on_close = on_close
        self._handlers: dict[str, Callable[[dict[str, Any], TraceContext], Awaitable[None]]] = {
            RequestType.LOAD.value: self._handle_load,
            RequestType.GENERATE.value: self._handle_generate,
            RequestType.INTERRUPT.value: self._handle_interrupt,
            RequestType.CLOSE.value: self._handle_close,
            RequestType.GET_PROVIDERS.value: self._handle_get_providers,
            RequestType.GET_MODELS.value: self._handle_get_models,
        }

    @property
    def context(self) -> GatewayContext:
        return self.registry.context

    def reject(self, reason: str, **extra: Any) -> None:
        logger.error("envelope_dropped", reason=reason, valid_types=VALID_TYPES, **extra)

    async def dispatch(self, message: dict[str, Any]) -> None:
        ctx = TraceContext(
            request_id=str(message["unique_request_id"]),
            request_type=str(message["type"]),
            provider=self.context.provider_name,
        )
        trace_event(logger, ctx, "envelope_received", "ok", {"envelope": redact(message)})
        handler = self._handlers.get(ctx.request_type)
        if handler is None:
            trace_event(logger, ctx, "envelope_dropped", "unknown_type", {"valid_types": VALID_TYPES})
            return
        await handler(message, ctx)

    async def _handle_load(self, message: dict[str, Any], ctx: TraceContext) -> None:
        if message.get("provider") is None:
            trace_event(logger, ctx, "envelope_dropped", "missing_field", {"field": "provider"})
            return
        try:
            request = LoadRequest.model_validate({**message, "unique_request_id": ctx.request_id})
        except ValidationError as exc:
            trace_event(logger, ctx, "envelope_dropped", "invalid_load", {"errors": exc.error_count()})
            return

        ctx.provider = request.provider
        await self._send(LoadAck(unique_request_id=request.unique_request_id, provider=request.provider))
        trace_event(logger, ctx, "request_acknowledged", "ok")

        error = await self.registry.load_provider(request.provider, request.load_params())
        await self._send(
            LoadDone(
                unique_request_id=request.unique_request_id,
                provider=request.provider,
                is_error=error.is_error,
                error=error,
            )
        )
        trace_event(logger, ctx, "request_completed", "error" if error.is_error else "ok", {"error": error.value})

    def _missing_generate_fields(self, message: dict[str, Any]) -> list[str]:
        missing = [f for f in REQUIRED_GENERATE_FIELDS if f not in message]
        params = message.get("params")
        if isinstance(params, dict):
            missing.extend(f"params.{f}" for f in REQUIRED_PARAM_FIELDS if f not in params)
        elif "params" not in missing:
            missing.append("params")
        return missing

    async def _handle_generate(self, message: dict[str, Any], ctx: TraceContext) -> None:
        adapter = self.context.adapter
        if adapter is None:
            trace_event(logger, ctx, "envelope_dropped", "no_provider_loaded")
            return

        missing = self._missing_generate_fields(message)
        if missing:
            trace_event(logger, ctx, "envelope_dropped", "missing_field", {"fields": missing, "example": EXAMPLE_GENERATE})
            return
        if not isinstance(message["stream"], bool):
            trace_event(logger, ctx, "envelope_dropped", "invalid_field", {"field": "stream"})
            return
        try:
            params = GenerationParameters.model_validate(message["params"])
        except ValidationError as exc:
            trace_event(logger, ctx, "envelope_dropped", "invalid_field", {"field": "params", "errors": exc.error_count()})
            return

        messages = self._parse_messages(message["messages"])
        request_id = ctx.request_id
        stream = message["stream"]

        await self._send(GenerateAck(unique_request_id=request_id))
        trace_event(logger, ctx, "request_acknowledged", "ok", {"stream": stream, "model_id": params.model_id})

        if stream:
            error = await self._run_stream(adapter, request_id, messages, params) if messages else ErrorKind.INVALID_PROMPT
            await self._send(GenerateStreamDone(unique_request_id=request_id, is_error=error.is_error, error=error))
        else:
            text = ""
            if messages:
                error, text = await self._run_sync(adapter, messages, params)
            else:
                error = ErrorKind.INVALID_PROMPT
            await self._send(GenerateDone(unique_request_id=request_id, is_error=error.is_error, error=error, response=text))

        trace_event(logger, ctx, "request_completed", "error" if error.is_error else "ok", {"error": error.value, "stream": stream})

    def _parse_messages(self, raw: Any) -> list[ChatMessage]:
        if not isinstance(raw, list):
            return []
        try:
            return [ChatMessage.model_validate(item) for item in raw]
        except ValidationError as exc:
            logger.error("invalid_prompt", errors=exc.error_count())
            return []

    async def _run_sync(
        self, adapter: ProviderAdapter, messages: list[ChatMessage], params: GenerationParameters
    ) -> tuple[ErrorKind, str]:
        try:
            result = await adapter.generate(messages, params)
        except Exception as exc:  # noqa: BLE001
            info = classify_error(exc, component=adapter.name)
            logger.error("generate_crashed", provider=adapter.name, error=compact_error_summary(exc))
            return info.kind, ""
        if result.is_error:
            logger.error("generate_failed", provider=adapter.name, error=result.error.value)
            return result.error, ""
        return result.error, result.text

    async def _run_stream(
        self, adapter: ProviderAdapter, request_id: str, messages: list[ChatMessage], params: GenerationParameters
    ) -> ErrorKind:
        async def forward(chunk: StreamChunk) -> None:
            # the done marker carries no payload for the client
            if chunk.done:
                return
            await self._send(GenerateStreamChunk(unique_request_id=request_id, chunk=chunk.text))

        try:
            error = await adapter.generate_stream(messages, params, forward)
        except Exception as exc:  # noqa: BLE001
            logger.error("generate_stream_crashed", provider=adapter.name, error=compact_error_summary(exc))
            return classify_error(exc, component=adapter.name).kind
        if error.is_error:
            logger.error("generate_stream_failed", provider=adapter.name, error=error.value)
        return error

    async def _handle_interrupt(self, message: dict[str, Any], ctx: TraceContext) -> None:
        await self._send(InterruptAck(unique_request_id=ctx.request_id))
        adapter = self.context.adapter
        if adapter is None:
            trace_event(logger, ctx, "interrupt_ignored", "no_provider_loaded")
            return
        await adapter.interrupt()
        trace_event(logger, ctx, "interrupt_requested", "ok")

    async def _handle_close(self, message: dict[str, Any], ctx: TraceContext) -> None:
        await self._send(CloseAck(unique_request_id=ctx.request_id))
        trace_event(logger, ctx, "close_requested", "ok")
        if self._on_close is not None:
            result = self._on_close()
            if inspect.isawaitable(result):
                await result

    async def _handle_get_providers(self, message: dict[str, Any], ctx: TraceContext) -> None:
        await self._send(GetProvidersDone(unique_request_id=ctx.request_id, providers=self.registry.names()))

    async def _handle_get_models(self, message: dict[str, Any], ctx: TraceContext) -> None:
        models: list[str] = []
        adapter = self.context.adapter
        if adapter is None:
            trace_event(logger, ctx, "get_models_empty", "no_provider_loaded")
        else:
            try:
                models = await adapter.get_models()
            except Exception as exc:  # noqa: BLE001
                logger.error("get_models_failed", provider=adapter.name, error=compact_error_summary(exc))
        await self._send(GetModelsDone(unique_request_id=ctx.request_id, models=models))
