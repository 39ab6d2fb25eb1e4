from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from pydantic import BaseModel

from llmgate.core.gateway.dispatcher import CloseHook, Dispatcher
from llmgate.core.protocol.correlation import InFlightOperations
from llmgate.core.protocol.envelopes import EnvelopeError, decode_frame, encode_frame
from llmgate.core.providers.registry import ProviderRegistry
from llmgate.core.runtime.errors import compact_error_summary
from llmgate.core.telemetry.logging import get_logger

logger = get_logger("llmgate.connection")


class GatewayConnection:
    """One client socket.

    Every inbound envelope is dispatched on its own task so an ``interrupt`` is handled while a
    ``generate`` is still waiting on its backend. Outbound frames share one lock so envelopes
    written by concurrent operations never interleave.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        send_text: Callable[[str], Awaitable[None]],
        *,
        on_close: CloseHook | None = None,
    ) -> None:
        self._send_text = send_text
        self._send_lock = asyncio.Lock()
        self.operations = InFlightOperations()
        self.dispatcher = Dispatcher(registry, self.send, on_close=on_close)

    async def send(self, envelope: BaseModel) -> None:
        frame = encode_frame(envelope)
        async with self._send_lock:
            await self._send_text(frame)

    def accept(self, raw: str | bytes) -> asyncio.Task[None] | None:
        try:
            message = decode_frame(raw)
        except EnvelopeError as exc:
            self.dispatcher.reject(str(exc))
            return None
        task = asyncio.create_task(self._dispatch(message))
        self.operations.track(str(message["unique_request_id"]), str(message["type"]), task)
        return task

    async def _dispatch(self, message: dict) -> None:
        try:
            await self.dispatcher.dispatch(message)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "dispatch_failed",
                request_id=str(message.get("unique_request_id")),
                request_type=str(message.get("type")),
                error=compact_error_summary(exc),
            )

    async def close(self) -> None:
        pending = self.operations.request_ids()
        if pending:
            logger.warning("connection_closed_with_pending_requests", request_ids=pending)
        await self.operations.cancel_all()
