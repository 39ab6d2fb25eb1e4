from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from llmgate.core.runtime.errors import ErrorKind


class RequestType(str, Enum):
    LOAD = "load"
    GENERATE = "generate"
    INTERRUPT = "interrupt"
    CLOSE = "close"
    GET_PROVIDERS = "get_providers"
    GET_MODELS = "get_models"


class ResponseType(str, Enum):
    LOAD_ACK = "load_ack"
    LOAD_DONE = "load_done"
    GENERATE_ACK = "generate_ack"
    GENERATE_DONE = "generate_done"
    GENERATE_STREAM_CHUNK = "generate_stream_chunk"
    GENERATE_STREAM_DONE = "generate_stream_done"
    INTERRUPT_ACK = "interrupt_ack"
    CLOSE_ACK = "close_ack"
    GET_PROVIDERS_DONE = "get_providers_done"
    GET_MODELS_DONE = "get_models_done"


REQUIRED_GENERATE_FIELDS = ("unique_request_id", "messages", "params", "stream")
REQUIRED_PARAM_FIELDS = ("model_id", "character_name", "temperature", "max_output_length", "stop_tokens", "timeout_ms")


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool", "function"]
    content: str
    name: str | None = None


class GenerationParameters(BaseModel):
    # every field is required on the wire; stop_tokens and timeout_ms may be null
    model_id: str
    character_name: str
    temperature: float
    max_output_length: int
    stop_tokens: list[str] | list[int] | None
    timeout_ms: int | None


class LoadRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["load"] = "load"
    unique_request_id: str
    provider: str
    api_key: str | None = None
    preload_model_id: str | None = None

    def load_params(self) -> dict[str, Any]:
        return self.model_dump(exclude={"type", "unique_request_id", "provider"})


class _Response(BaseModel):
    unique_request_id: str


class LoadAck(_Response):
    type: Literal["load_ack"] = "load_ack"
    provider: str


class LoadDone(_Response):
    type: Literal["load_done"] = "load_done"
    provider: str
    is_error: bool
    error: ErrorKind


class GenerateAck(_Response):
    type: Literal["generate_ack"] = "generate_ack"


class GenerateDone(_Response):
    type: Literal["generate_done"] = "generate_done"
    is_error: bool
    error: ErrorKind
    response: str = ""


class GenerateStreamChunk(_Response):
    type: Literal["generate_stream_chunk"] = "generate_stream_chunk"
    chunk: str


class GenerateStreamDone(_Response):
    type: Literal["generate_stream_done"] = "generate_stream_done"
    is_error: bool
    error: ErrorKind


class InterruptAck(_Response):
    type: Literal["interrupt_ack"] = "interrupt_ack"


class CloseAck(_Response):
    type: Literal["close_ack"] = "close_ack"


class GetProvidersDone(_Response):
    type: Literal["get_providers_done"] = "get_providers_done"
    providers: list[str]


class GetModelsDone(_Response):
    type: Literal["get_models_done"] = "get_models_done"
    models: list[str]


ResponseEnvelope = Annotated[
    Union[
        LoadAck,
        LoadDone,
        GenerateAck,
        GenerateDone,
        GenerateStreamChunk,
        GenerateStreamDone,
        InterruptAck,
        CloseAck,
        GetProvidersDone,
        GetModelsDone,
    ],
    Field(discriminator="type"),
]

_response_adapter: TypeAdapter[Any] = TypeAdapter(ResponseEnvelope)


class EnvelopeError(ValueError):
    pass


def decode_frame(raw: str | bytes) -> dict[str, Any]:
    """Parse one socket frame into an envelope dict carrying a type and a request id."""
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise EnvelopeError("frame is not valid JSON") from exc
    if not isinstance(message, dict):
        raise EnvelopeError("frame is not a JSON object")
    if message.get("type") is None:
        raise EnvelopeError('envelope is missing the required field "type"')
    if message.get("unique_request_id") is None:
        raise EnvelopeError('envelope is missing the required field "unique_request_id"')
    return message


def encode_frame(envelope: BaseModel | dict[str, Any]) -> str:
    if isinstance(envelope, BaseModel):
        return envelope.model_dump_json(exclude_none=False)
    return json.dumps(envelope)


def parse_response(message: dict[str, Any]) -> BaseModel:
    return _response_adapter.validate_python(message)
