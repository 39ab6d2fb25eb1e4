from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    SUCCESS = "SUCCESS"
    UNEXPECTED = "UNEXPECTED"
    AUTHORIZATION = "AUTHORIZATION"
    INVALID_PROMPT = "INVALID_PROMPT"
    INVALID_PROVIDER = "INVALID_PROVIDER"
    INVALID_MODEL = "INVALID_MODEL"
    TIMEOUT = "TIMEOUT"
    INTERRUPT = "INTERRUPT"

    @property
    def is_error(self) -> bool:
        return self is not ErrorKind.SUCCESS


@dataclass(slots=True)
class ErrorInfo:
    kind: ErrorKind
    component: str
    error_type: str
    message_signature: str
    http_status: int | None = None


def _normalize_message(message: str, max_len: int = 180) -> str:
    msg = message.lower()
    msg = re.sub(r"\s+", " ", msg)
    msg = re.sub(r"\d+", "#", msg)
    return msg.strip()[:max_len]


def _compact_message(message: str, max_len: int = 220) -> str:
    msg = message.lower()
    msg = re.sub(r"\s+", " ", msg)
    return msg.strip()[:max_len]


def _kind_for_status(status: int) -> ErrorKind:
    if status in {401, 403}:
        return ErrorKind.AUTHORIZATION
    if status == 404:
        return ErrorKind.INVALID_MODEL
    if status in {400, 422}:
        return ErrorKind.INVALID_PROMPT
    if status == 408:
        return ErrorKind.TIMEOUT
    return ErrorKind.UNEXPECTED


def classify_error(exc: BaseException, *, component: str) -> ErrorInfo:
    """Map a backend failure onto the wire error taxonomy."""
    msg = str(exc)
    normalized = _normalize_message(msg)

    status: int | None = None
    kind = ErrorKind.UNEXPECTED
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        kind = _kind_for_status(status)
    elif isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        kind = ErrorKind.TIMEOUT
    else:
        m = re.search(r"\b(4\d\d|5\d\d)\b", msg)
        if m:
            status = int(m.group(1))
            kind = _kind_for_status(status)

    return ErrorInfo(
        kind=kind,
        component=component,
        error_type=exc.__class__.__name__,
        message_signature=normalized,
        http_status=status,
    )


def compact_error_summary(exc: BaseException, max_len: int = 220) -> str:
    return f"{exc.__class__.__name__}: {_compact_message(str(exc), max_len=max_len)}"


class GatewayError(Exception):
    """Base class for failures raised by the gateway client."""


class GatewayConnectionError(GatewayError):
    pass


class GatewayTimeoutError(GatewayError):
    """The gateway did not acknowledge a request in time; it is likely down."""

    def __init__(self, operation: str, timeout_ms: int) -> None:
        super().__init__(f"{operation} timed out after {timeout_ms}ms, gateway may be closed")
        self.operation = operation
        self.timeout_ms = timeout_ms


class ProviderLoadError(GatewayError):
    def __init__(self, provider: str, kind: ErrorKind) -> None:
        super().__init__(f"failed to load provider {provider}: {kind.value}")
        self.provider = provider
        self.kind = kind


class GenerationError(GatewayError):
    def __init__(self, kind: ErrorKind, *, streamed: bool = False) -> None:
        action = "stream response" if streamed else "generate response"
        super().__init__(f"failed to {action}: {kind.value}")
        self.kind = kind
        self.streamed = streamed
