from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from llmgate.core.config.schema import ProviderConfig
from llmgate.core.protocol.envelopes import ChatMessage, GenerationParameters
from llmgate.core.runtime.errors import ErrorKind, classify_error, compact_error_summary
from llmgate.core.runtime.supervisor import Deadline, GenerationStopped, InterruptToken, supervise
from llmgate.core.telemetry.logging import get_logger

_END = object()


@dataclass(slots=True)
class StreamChunk:
    text: str
    done: bool = False


@dataclass(slots=True)
class GenerationResult:
    error: ErrorKind
    text: str = ""

    @property
    def is_error(self) -> bool:
        return self.error.is_error


ChunkCallback = Callable[[StreamChunk], Awaitable[None] | None]


async def _deliver(on_chunk: ChunkCallback, chunk: StreamChunk) -> None:
    result = on_chunk(chunk)
    if inspect.isawaitable(result):
        await result


async def _next_fragment(stream: AsyncIterator[str]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END


class ProviderAdapter(ABC):
    """Uniform contract every backend integration implements.

    Subclasses provide ``_complete`` (one blocking call) and/or ``_stream`` (an async iterator of
    text fragments) and declare which of them the backend supports natively. ``generate`` and
    ``generate_stream`` bridge the gap, so a streaming-only backend can still answer a blocking
    request and a non-streaming backend still produces a stream terminated by a done chunk.

    ``native_abort`` marks backends whose in-flight HTTP call is cancelled the moment a timeout or
    an interrupt fires. Other backends only observe the interrupt flag between fragments, and a
    timed out call is left to finish in the background with its output discarded.
    """

    name: str = "base"
    completes_natively: bool = True
    streams_natively: bool = False
    native_abort: bool = False

    def __init__(self, config: ProviderConfig | None = None) -> None:
        self.config = config
        self.interrupt_token = InterruptToken()
        self.logger = get_logger(f"llmgate.providers.{self.name}")
        self._detached: set[asyncio.Future[Any]] = set()

    @property
    def interrupt_requested(self) -> bool:
        return self.interrupt_token.is_set()

    @abstractmethod
    async def init(self, load_params: dict[str, Any]) -> ErrorKind:
        raise NotImplementedError

    @abstractmethod
    async def get_models(self) -> list[str]:
        raise NotImplementedError

    async def free(self) -> None:
        for future in list(self._detached):
            future.cancel()
        self._detached.clear()
        await self._release()

    async def _release(self) -> None:
        return None

    async def interrupt(self) -> None:
        self.interrupt_token.set()

    async def _complete(self, messages: Sequence[ChatMessage], params: GenerationParameters) -> str:
        raise NotImplementedError

    def _stream(self, messages: Sequence[ChatMessage], params: GenerationParameters) -> AsyncIterator[str]:
        raise NotImplementedError

    def _check_request(self, messages: Sequence[ChatMessage], params: GenerationParameters) -> ErrorKind:
        if not messages:
            return ErrorKind.INVALID_PROMPT
        return ErrorKind.SUCCESS

    def _detach(self, step: asyncio.Future[Any], closer: Callable[[], Awaitable[None]] | None = None) -> None:
        async def _drain() -> None:
            await asyncio.wait({step})
            if not step.cancelled() and step.exception() is not None:
                self.logger.info("detached_call_failed", provider=self.name, error=compact_error_summary(step.exception()))
            if closer is not None:
                await closer()

        drain = asyncio.ensure_future(_drain())
        for future in (step, drain):
            self._detached.add(future)
            future.add_done_callback(self._detached.discard)
        self.logger.info("backend_call_detached", provider=self.name)

    def _failure(self, exc: Exception, operation: str) -> ErrorKind:
        info = classify_error(exc, component=self.name)
        self.logger.error(
            f"{operation}_failed",
            provider=self.name,
            error_kind=info.kind.value,
            http_status=info.http_status,
            error=compact_error_summary(exc),
        )
        return info.kind

    async def _pump(
        self,
        messages: Sequence[ChatMessage],
        params: GenerationParameters,
        deadline: Deadline,
        on_fragment: Callable[[str], Awaitable[None] | None],
        *,
        refresh: bool,
    ) -> ErrorKind:
        stream = self._stream(messages, params)
        detached = False

        def _on_detach(step: asyncio.Future[Any]) -> None:
            nonlocal detached
            detached = True
            self._detach(step, closer=getattr(stream, "aclose", None))

        try:
            while True:
                if self.interrupt_requested:
                    return ErrorKind.INTERRUPT
                fragment = await supervise(
                    _next_fragment(stream),
                    deadline,
                    self.interrupt_token,
                    native_abort=self.native_abort,
                    on_detach=_on_detach,
                )
                if fragment is _END:
                    break
                if refresh:
                    deadline.refresh()
                if self.interrupt_requested:
                    return ErrorKind.INTERRUPT
                result = on_fragment(fragment)
                if inspect.isawaitable(result):
                    await result
        finally:
            aclose = getattr(stream, "aclose", None)
            if not detached and aclose is not None:
                await aclose()
        return ErrorKind.SUCCESS

    async def _complete_supervised(
        self, messages: Sequence[ChatMessage], params: GenerationParameters, deadline: Deadline
    ) -> str:
        return await supervise(
            self._complete(messages, params),
            deadline,
            self.interrupt_token,
            native_abort=self.native_abort,
            on_detach=self._detach,
        )

    async def generate(self, messages: Sequence[ChatMessage], params: GenerationParameters) -> GenerationResult:
        self.interrupt_token.clear()
        error = self._check_request(messages, params)
        if error.is_error:
            return GenerationResult(error=error)

        deadline = Deadline(params.timeout_ms)
        try:
            if self.completes_natively:
                text = await self._complete_supervised(messages, params, deadline)
            else:
                parts: list[str] = []
                error = await self._pump(messages, params, deadline, parts.append, refresh=False)
                text = "".join(parts)
        except GenerationStopped as stop:
            self.logger.warning("generate_stopped", provider=self.name, reason=stop.kind.value, timeout_ms=params.timeout_ms)
            return GenerationResult(error=stop.kind)
        except Exception as exc:  # noqa: BLE001
            return GenerationResult(error=self._failure(exc, "generate"))

        if error.is_error:
            return GenerationResult(error=error)
        if self.interrupt_requested:
            return GenerationResult(error=ErrorKind.INTERRUPT)
        return GenerationResult(error=ErrorKind.SUCCESS, text=text)

    async def generate_stream(
        self,
        messages: Sequence[ChatMessage],
        params: GenerationParameters,
        on_chunk: ChunkCallback,
    ) -> ErrorKind:
        self.interrupt_token.clear()
        error = self._check_request(messages, params)
        if not error.is_error:
            deadline = Deadline(params.timeout_ms)
            try:
                if self.streams_natively:
                    error = await self._pump(
                        messages,
                        params,
                        deadline,
                        lambda fragment: _deliver(on_chunk, StreamChunk(text=fragment)),
                        refresh=True,
                    )
                else:
                    text = await self._complete_supervised(messages, params, deadline)
                    if self.interrupt_requested:
                        error = ErrorKind.INTERRUPT
                    elif text:
                        await _deliver(on_chunk, StreamChunk(text=text))
            except GenerationStopped as stop:
                self.logger.warning("generate_stream_stopped", provider=self.name, reason=stop.kind.value, timeout_ms=params.timeout_ms)
                error = stop.kind
            except Exception as exc:  # noqa: BLE001
                error = self._failure(exc, "generate_stream")

        await _deliver(on_chunk, StreamChunk(text="", done=True))
        return error


async def free_quietly(adapter: ProviderAdapter) -> None:
    try:
        await adapter.free()
    except Exception as exc:  # noqa: BLE001
        adapter.logger.error("free_failed", provider=adapter.name, error=compact_error_summary(exc))
