from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from llmgate.core.protocol.envelopes import ResponseType
from llmgate.core.telemetry.logging import get_logger

logger = get_logger("llmgate.correlation")

ChunkHandler = Callable[[str], Any]


def _key(event_type: ResponseType | str, request_id: str) -> tuple[str, str]:
    name = event_type.value if isinstance(event_type, ResponseType) else str(event_type)
    return name, request_id


class PendingRequests:
    """One-shot waiters keyed by ``(event_type, request_id)`` plus persistent chunk handlers.

    A waiter is removed the moment it resolves, and ``discard_all`` removes every waiter of an
    operation that timed out or was abandoned. Events that arrive with nobody waiting are logged
    and dropped.
    """

    def __init__(self) -> None:
        self._waiters: dict[tuple[str, str], asyncio.Future[dict[str, Any]]] = {}
        self._chunk_handlers: dict[str, ChunkHandler] = {}

    def __len__(self) -> int:
        return len(self._waiters) + len(self._chunk_handlers)

    def is_waiting(self, event_type: ResponseType | str, request_id: str) -> bool:
        return _key(event_type, request_id) in self._waiters

    def expect(self, event_type: ResponseType | str, request_id: str) -> asyncio.Future[dict[str, Any]]:
        key = _key(event_type, request_id)
        if key in self._waiters:
            raise ValueError(f"already waiting for {key[0]} on request {request_id}")
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._waiters[key] = future
        return future

    def on_chunks(self, request_id: str, handler: ChunkHandler) -> None:
        self._chunk_handlers[request_id] = handler

    def drop_chunks(self, request_id: str) -> None:
        self._chunk_handlers.pop(request_id, None)

    def discard(self, event_type: ResponseType | str, request_id: str) -> None:
        future = self._waiters.pop(_key(event_type, request_id), None)
        if future is not None and not future.done():
            future.cancel()

    def discard_all(self, request_id: str) -> None:
        for key in [k for k in self._waiters if k[1] == request_id]:
            future = self._waiters.pop(key)
            if not future.done():
                future.cancel()
        self.drop_chunks(request_id)

    def fail_all(self, exc: BaseException) -> None:
        waiters = list(self._waiters.values())
        self._waiters.clear()
        self._chunk_handlers.clear()
        for future in waiters:
            if not future.done():
                future.set_exception(exc)

    async def route(self, message: dict[str, Any]) -> bool:
        event_type = str(message.get("type"))
        request_id = str(message.get("unique_request_id"))

        if event_type == ResponseType.GENERATE_STREAM_CHUNK.value:
            handler = self._chunk_handlers.get(request_id)
            if handler is None:
                logger.warning("unhandled_event", event_type=event_type, request_id=request_id)
                return False
            result = handler(str(message.get("chunk", "")))
            if inspect.isawaitable(result):
                await result
            return True

        future = self._waiters.pop((event_type, request_id), None)
        if future is None or future.done():
            logger.warning("unhandled_event", event_type=event_type, request_id=request_id)
            return False
        future.set_result(message)
        return True


@dataclass(slots=True)
class InFlightOperation:
    request_id: str
    request_type: str
    task: asyncio.Task[Any]


class InFlightOperations:
    """Server side mirror: the dispatch task of every request still being worked on."""

    def __init__(self) -> None:
        self._operations: dict[asyncio.Task[Any], InFlightOperation] = {}

    def __len__(self) -> int:
        return len(self._operations)

    def track(self, request_id: str, request_type: str, task: asyncio.Task[Any]) -> None:
        self._operations[task] = InFlightOperation(request_id=request_id, request_type=request_type, task=task)
        task.add_done_callback(self._untrack)

    def _untrack(self, task: asyncio.Task[Any]) -> None:
        self._operations.pop(task, None)

    def request_ids(self) -> list[str]:
        return [op.request_id for op in self._operations.values()]

    async def cancel_all(self) -> None:
        tasks = list(self._operations)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
