from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence
from typing import Any, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from llmgate.core.config.schema import GatewayConfig, GenerationDefaults
from llmgate.core.protocol.correlation import ChunkHandler, PendingRequests
from llmgate.core.protocol.envelopes import (
    ChatMessage,
    EnvelopeError,
    GenerateDone,
    GenerateStreamDone,
    GenerationParameters,
    GetModelsDone,
    GetProvidersDone,
    LoadDone,
    RequestType,
    ResponseType,
    decode_frame,
    encode_frame,
)
from llmgate.core.runtime.errors import (
    GatewayConnectionError,
    GatewayTimeoutError,
    GenerationError,
    ProviderLoadError,
    compact_error_summary,
)
from llmgate.core.runtime.supervisor import run_with_timeout
from llmgate.core.telemetry.logging import get_logger
from llmgate.core.telemetry.tracing import TraceContext, trace_event

logger = get_logger("llmgate.client")


class FrameConnection(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self): ...


def _settle(*futures: asyncio.Future[Any] | None) -> None:
    for future in futures:
        if future is not None and future.done() and not future.cancelled():
            future.exception()


class GatewayClient:
    """Client side of the gateway socket.

    Every operation registers its waiters before the envelope is sent, races the acknowledgement
    against ``ack_timeout_ms`` and then waits for the terminal event without a bound of its own.
    A missing acknowledgement means the gateway itself is unresponsive and surfaces as
    ``GatewayTimeoutError``; backend failures surface as ``GenerationError`` or
    ``ProviderLoadError`` carrying the reported ``ErrorKind``.
    """

    def __init__(
        self,
        connection: FrameConnection,
        *,
        ack_timeout_ms: int = 1000,
        generation_defaults: GenerationDefaults | None = None,
    ) -> None:
        self._connection = connection
        self.ack_timeout_ms = ack_timeout_ms
        self.generation_defaults = generation_defaults or GenerationDefaults()
        self.pending = PendingRequests()
        self._reader = asyncio.create_task(self._read_loop())

    @classmethod
    async def connect(
        cls,
        url: str = "ws://127.0.0.1:7562",
        *,
        ack_timeout_ms: int = 1000,
        open_timeout: float = 5.0,
        generation_defaults: GenerationDefaults | None = None,
    ) -> GatewayClient:
        try:
            connection = await websockets.connect(url, open_timeout=open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise GatewayConnectionError(f"cannot connect to gateway at {url}: {compact_error_summary(exc)}") from exc
        logger.info("gateway_connected", url=url)
        return cls(connection, ack_timeout_ms=ack_timeout_ms, generation_defaults=generation_defaults)

    @classmethod
    async def from_config(cls, cfg: GatewayConfig) -> GatewayClient:
        return await cls.connect(
            cfg.client.url,
            ack_timeout_ms=cfg.client.ack_timeout_ms,
            open_timeout=cfg.client.connect_timeout_seconds,
            generation_defaults=cfg.generation_defaults,
        )

    @property
    def connected(self) -> bool:
        return not self._reader.done()

    async def __aenter__(self) -> GatewayClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _read_loop(self) -> None:
        error = GatewayConnectionError("gateway connection closed")
        try:
            async for raw in self._connection:
                try:
                    message = decode_frame(raw)
                except EnvelopeError as exc:
                    logger.error("inbound_frame_dropped", reason=str(exc))
                    continue
                try:
                    await self.pending.route(message)
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "inbound_event_failed",
                        event_type=str(message.get("type")),
                        request_id=str(message.get("unique_request_id")),
                        error=compact_error_summary(exc),
                    )
        except ConnectionClosed as exc:
            error = GatewayConnectionError(f"gateway connection lost: {exc}")
            logger.warning("gateway_connection_lost", error=str(exc))
        finally:
            self.pending.fail_all(error)

    async def _send(self, envelope: dict[str, Any]) -> None:
        if not self.connected:
            raise GatewayConnectionError("gateway connection closed")
        try:
            await self._connection.send(encode_frame(envelope))
        except ConnectionClosed as exc:
            raise GatewayConnectionError(f"gateway connection lost: {exc}") from exc

    def _envelope(self, request_type: RequestType, **fields: Any) -> dict[str, Any]:
        envelope = {"type": request_type.value, "unique_request_id": uuid.uuid4().hex}
        envelope.update({k: v for k, v in fields.items() if v is not None})
        return envelope

    async def _bounded(self, operation: str, request_id: str, future: asyncio.Future[dict[str, Any]]) -> dict[str, Any]:
        try:
            return await run_with_timeout(future, self.ack_timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            self.pending.discard_all(request_id)
            logger.error("ack_timeout", request_type=operation, request_id=request_id, timeout_ms=self.ack_timeout_ms)
            raise GatewayTimeoutError(operation, self.ack_timeout_ms) from exc

    async def _exchange(
        self,
        envelope: dict[str, Any],
        *,
        ack: ResponseType | None = None,
        done: ResponseType | None = None,
        on_chunk: ChunkHandler | None = None,
    ) -> dict[str, Any]:
        request_id = envelope["unique_request_id"]
        operation = envelope["type"]
        ctx = TraceContext(request_id=request_id, request_type=operation, provider=envelope.get("provider"), side="client")

        ack_future = self.pending.expect(ack, request_id) if ack is not None else None
        done_future = self.pending.expect(done, request_id) if done is not None else None
        if on_chunk is not None:
            self.pending.on_chunks(request_id, on_chunk)
        try:
            await self._send(envelope)
            trace_event(logger, ctx, "request_sent", "ok")
            first = ack_future if ack_future is not None else done_future
            message = await self._bounded(operation, request_id, first)
            if done_future is not None and first is not done_future:
                message = await done_future
            trace_event(logger, ctx, "request_completed", "error" if message.get("is_error") else "ok")
            return message
        finally:
            self.pending.discard_all(request_id)
            _settle(ack_future, done_future)

    def _params(self, overrides: dict[str, Any]) -> GenerationParameters:
        return GenerationParameters.model_validate({**self.generation_defaults.model_dump(), **overrides})

    @staticmethod
    def _messages(messages: Sequence[ChatMessage | dict[str, Any]]) -> list[dict[str, Any]]:
        return [ChatMessage.model_validate(m).model_dump(exclude_none=True) for m in messages]

    async def load_provider(self, provider: str, api_key: str | None = None, preload_model_id: str | None = None) -> None:
        envelope = self._envelope(RequestType.LOAD, provider=provider, api_key=api_key, preload_model_id=preload_model_id)
        message = await self._exchange(envelope, ack=ResponseType.LOAD_ACK, done=ResponseType.LOAD_DONE)
        result = LoadDone.model_validate(message)
        if result.is_error:
            raise ProviderLoadError(provider, result.error)

    async def generate(self, messages: Sequence[ChatMessage | dict[str, Any]], **params: Any) -> str:
        envelope = self._envelope(
            RequestType.GENERATE,
            messages=self._messages(messages),
            params=self._params(params).model_dump(),
            stream=False,
        )
        message = await self._exchange(envelope, ack=ResponseType.GENERATE_ACK, done=ResponseType.GENERATE_DONE)
        result = GenerateDone.model_validate(message)
        if result.is_error:
            raise GenerationError(result.error)
        return result.response

    async def generate_stream(
        self,
        messages: Sequence[ChatMessage | dict[str, Any]],
        on_chunk: ChunkHandler,
        **params: Any,
    ) -> None:
        envelope = self._envelope(
            RequestType.GENERATE,
            messages=self._messages(messages),
            params=self._params(params).model_dump(),
            stream=True,
        )
        message = await self._exchange(
            envelope,
            ack=ResponseType.GENERATE_ACK,
            done=ResponseType.GENERATE_STREAM_DONE,
            on_chunk=on_chunk,
        )
        result = GenerateStreamDone.model_validate(message)
        if result.is_error:
            raise GenerationError(result.error, streamed=True)

    async def interrupt(self) -> None:
        await self._exchange(self._envelope(RequestType.INTERRUPT), ack=ResponseType.INTERRUPT_ACK)

    async def get_providers(self) -> list[str]:
        message = await self._exchange(self._envelope(RequestType.GET_PROVIDERS), done=ResponseType.GET_PROVIDERS_DONE)
        return GetProvidersDone.model_validate(message).providers

    async def get_models(self) -> list[str]:
        message = await self._exchange(self._envelope(RequestType.GET_MODELS), done=ResponseType.GET_MODELS_DONE)
        return GetModelsDone.model_validate(message).models

    async def close(self) -> None:
        """Ask the gateway process to exit, then drop the connection."""
        try:
            await self._exchange(self._envelope(RequestType.CLOSE), ack=ResponseType.CLOSE_ACK)
        except (GatewayTimeoutError, GatewayConnectionError) as exc:
            logger.info("gateway_already_closed", reason=str(exc))
        await self.aclose()

    async def aclose(self) -> None:
        if not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        await self._connection.close()
