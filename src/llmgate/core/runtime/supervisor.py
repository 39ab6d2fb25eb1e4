from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from llmgate.core.runtime.errors import ErrorKind

T = TypeVar("T")


class GenerationStopped(Exception):
    """Raised when a supervised backend call lost the race to the deadline or an interrupt."""

    def __init__(self, kind: ErrorKind) -> None:
        super().__init__(kind.value)
        self.kind = kind


class Deadline:
    """Completion deadline for one generation.

    A streaming generation calls ``refresh`` on every received chunk so that a slow but
    progressing backend is not cut off, only a stalled one. ``timeout_ms`` of ``None`` or ``0``
    disables the deadline entirely.
    """

    def __init__(self, timeout_ms: int | None) -> None:
        self.timeout_ms = timeout_ms if timeout_ms and timeout_ms > 0 else None
        self._expires_at: float | None = None
        self.refresh()

    def refresh(self) -> None:
        if self.timeout_ms is None:
            return
        self._expires_at = time.monotonic() + self.timeout_ms / 1000

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


class InterruptToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def set(self) -> None:
        self._event.set()

    def clear(self) -> None:
        self._event.clear()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def run_with_timeout(awaitable: Awaitable[T], timeout_seconds: float) -> T:
    return await asyncio.wait_for(awaitable, timeout=timeout_seconds)


async def cancel_and_wait(future: asyncio.Future[Any]) -> None:
    future.cancel()
    await asyncio.wait({future})
    if not future.cancelled():
        # consume the result so a late failure is not reported as never retrieved
        future.exception()


async def supervise(
    call: Awaitable[T],
    deadline: Deadline,
    token: InterruptToken,
    *,
    native_abort: bool,
    on_detach: Callable[[asyncio.Future[T]], None] | None = None,
) -> T:
    """Await ``call`` while racing it against ``deadline`` and, for abortable backends, ``token``.

    When the race is lost an abortable call is cancelled, which closes the underlying HTTP
    request. A call that cannot be aborted is handed to ``on_detach`` and keeps running in the
    background with its result discarded. Either way ``GenerationStopped`` is raised.
    """
    step: asyncio.Future[T] = asyncio.ensure_future(call)
    watchers: set[asyncio.Future[Any]] = {step}
    interrupted: asyncio.Future[None] | None = None
    if native_abort:
        if token.is_set():
            await cancel_and_wait(step)
            raise GenerationStopped(ErrorKind.INTERRUPT)
        interrupted = asyncio.ensure_future(token.wait())
        watchers.add(interrupted)

    try:
        done, _ = await asyncio.wait(watchers, timeout=deadline.remaining(), return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        step.cancel()
        raise
    finally:
        if interrupted is not None:
            interrupted.cancel()

    if step in done:
        return step.result()

    kind = ErrorKind.INTERRUPT if token.is_set() else ErrorKind.TIMEOUT
    if native_abort or on_detach is None:
        await cancel_and_wait(step)
    else:
        on_detach(step)
    raise GenerationStopped(kind)
