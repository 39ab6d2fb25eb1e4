from __future__ import annotations

import asyncio
import json

import httpx
import pytest
import respx

from llmgate.core.config.schema import GatewayConfig, ProviderConfig, ProvidersConfig
from llmgate.core.gateway.connection import GatewayConnection
from llmgate.core.providers.base import ProviderAdapter
from llmgate.core.providers.registry import ProviderRegistry, build_default_registry
from llmgate.core.runtime.errors import ErrorKind

PARAMS = {
    "model_id": "m",
    "character_name": "AI",
    "temperature": 1.0,
    "max_output_length": 20,
    "stop_tokens": None,
    "timeout_ms": None,
}


class EchoAdapter(ProviderAdapter):
    name = "echo"
    streams_natively = True

    def __init__(self, delay: float = 0.0):
        super().__init__()
        self.delay = delay

    async def init(self, load_params):
        return ErrorKind.SUCCESS if load_params.get("api_key") != "bad" else ErrorKind.AUTHORIZATION

    async def get_models(self):
        return ["echo-small", "echo-large"]

    async def _complete(self, messages, params):
        await asyncio.sleep(self.delay)
        return f"echo: {messages[-1].content}"

    async def _stream(self, messages, params):
        for word in messages[-1].content.split():
            await asyncio.sleep(self.delay)
            yield word


class Harness:
    def __init__(self, registry: ProviderRegistry) -> None:
        self.frames: list[dict] = []
        self.closed = False
        self.connection = GatewayConnection(registry, self._send_text, on_close=self._on_close)

    async def _send_text(self, text: str) -> None:
        self.frames.append(json.loads(text))

    def _on_close(self) -> None:
        self.closed = True

    async def request(self, **envelope) -> None:
        task = self.connection.accept(json.dumps(envelope))
        if task is not None:
            await task

    def events(self, request_id: str) -> list[dict]:
        return [f for f in self.frames if f["unique_request_id"] == request_id]


def _harness(delay: float = 0.0) -> Harness:
    registry = ProviderRegistry()
    registry.register("echo", lambda: EchoAdapter(delay))
    return Harness(registry)


@pytest.mark.asyncio
async def test_load_then_sync_generate_orders_ack_before_done():
    h = _harness()
    await h.request(type="load", unique_request_id="l1", provider="echo", api_key="k")
    await h.request(type="generate", unique_request_id="g1", messages=[{"role": "user", "content": "hello"}], params=PARAMS, stream=False)

    assert [e["type"] for e in h.events("l1")] == ["load_ack", "load_done"]
    assert h.events("l1")[1]["error"] == "SUCCESS"
    generate = h.events("g1")
    assert [e["type"] for e in generate] == ["generate_ack", "generate_done"]
    assert generate[1] == {"unique_request_id": "g1", "type": "generate_done", "is_error": False, "error": "SUCCESS", "response": "echo: hello"}


@pytest.mark.asyncio
async def test_stream_chunks_precede_single_done():
    h = _harness()
    await h.request(type="load", unique_request_id="l1", provider="echo")
    await h.request(type="generate", unique_request_id="s1", messages=[{"role": "user", "content": "one two three"}], params=PARAMS, stream=True)

    events = h.events("s1")
    assert [e["type"] for e in events] == [
        "generate_ack",
        "generate_stream_chunk",
        "generate_stream_chunk",
        "generate_stream_chunk",
        "generate_stream_done",
    ]
    assert [e["chunk"] for e in events if e["type"] == "generate_stream_chunk"] == ["one", "two", "three"]
    assert events[-1]["is_error"] is False


@pytest.mark.asyncio
async def test_interrupt_while_streaming_ends_with_interrupt():
    h = _harness(delay=0.05)
    await h.request(type="load", unique_request_id="l1", provider="echo")
    stream = h.connection.accept(
        json.dumps(
            {"type": "generate", "unique_request_id": "s1", "messages": [{"role": "user", "content": "a b c d e f"}], "params": PARAMS, "stream": True}
        )
    )
    await asyncio.sleep(0.07)
    await h.request(type="interrupt", unique_request_id="i1")
    await stream

    assert [e["type"] for e in h.events("i1")] == ["interrupt_ack"]
    done = h.events("s1")[-1]
    assert done["type"] == "generate_stream_done"
    assert done["error"] == "INTERRUPT"
    assert sum(1 for e in h.events("s1") if e["type"] == "generate_stream_done") == 1


@pytest.mark.asyncio
async def test_interrupt_after_completion_has_no_effect():
    h = _harness()
    await h.request(type="load", unique_request_id="l1", provider="echo")
    await h.request(type="generate", unique_request_id="g1", messages=[{"role": "user", "content": "hi"}], params=PARAMS, stream=False)
    await h.request(type="interrupt", unique_request_id="i1")
    await h.request(type="generate", unique_request_id="g2", messages=[{"role": "user", "content": "again"}], params=PARAMS, stream=False)

    assert h.events("g1")[-1]["error"] == "SUCCESS"
    assert h.events("g2")[-1]["response"] == "echo: again"


@pytest.mark.asyncio
async def test_silent_backend_times_out_stream():
    h = _harness(delay=5)
    await h.request(type="load", unique_request_id="l1", provider="echo")
    await h.request(
        type="generate",
        unique_request_id="s1",
        messages=[{"role": "user", "content": "hi"}],
        params={**PARAMS, "timeout_ms": 50},
        stream=True,
    )
    done = h.events("s1")[-1]
    assert done == {"unique_request_id": "s1", "type": "generate_stream_done", "is_error": True, "error": "TIMEOUT"}
    await h.connection.dispatcher.registry.unload()


@pytest.mark.asyncio
async def test_unknown_provider_and_empty_model_list():
    h = _harness()
    await h.request(type="get_providers", unique_request_id="p1")
    await h.request(type="get_models", unique_request_id="m1")
    await h.request(type="load", unique_request_id="l1", provider="llama_cpp")

    assert h.events("p1") == [{"unique_request_id": "p1", "type": "get_providers_done", "providers": ["echo"]}]
    assert h.events("m1") == [{"unique_request_id": "m1", "type": "get_models_done", "models": []}]
    assert h.events("l1")[-1] == {
        "unique_request_id": "l1",
        "type": "load_done",
        "provider": "llama_cpp",
        "is_error": True,
        "error": "INVALID_PROVIDER",
    }
    assert h.connection.dispatcher.context.loaded is False


@pytest.mark.asyncio
async def test_rejected_credentials_report_authorization():
    h = _harness()
    await h.request(type="load", unique_request_id="l1", provider="echo", api_key="bad")
    assert h.events("l1")[-1]["error"] == "AUTHORIZATION"
    await h.request(type="get_models", unique_request_id="m1")
    assert h.events("m1")[0]["models"] == []


@pytest.mark.asyncio
async def test_malformed_and_incomplete_envelopes_get_no_response():
    h = _harness()
    assert h.connection.accept("not json") is None
    assert h.connection.accept(json.dumps({"type": "load"})) is None
    await h.request(type="bogus", unique_request_id="x1")
    await h.request(type="load", unique_request_id="x2")
    # generate with nothing loaded
    await h.request(type="generate", unique_request_id="x3", messages=[{"role": "user", "content": "hi"}], params=PARAMS, stream=False)

    await h.request(type="load", unique_request_id="l1", provider="echo")
    await h.request(type="generate", unique_request_id="x4", messages=[{"role": "user", "content": "hi"}], params={"model_id": "m"}, stream=False)
    await h.request(type="generate", unique_request_id="x5", messages=[{"role": "user", "content": "hi"}], params=PARAMS)

    assert [f["unique_request_id"] for f in h.frames] == ["l1", "l1"]


@pytest.mark.asyncio
async def test_invalid_messages_report_invalid_prompt():
    h = _harness()
    await h.request(type="load", unique_request_id="l1", provider="echo")
    await h.request(type="generate", unique_request_id="g1", messages=[], params=PARAMS, stream=False)
    await h.request(type="generate", unique_request_id="g2", messages=[{"role": "robot", "content": "x"}], params=PARAMS, stream=True)

    assert [e["type"] for e in h.events("g1")] == ["generate_ack", "generate_done"]
    assert h.events("g1")[-1]["error"] == "INVALID_PROMPT"
    assert [e["type"] for e in h.events("g2")] == ["generate_ack", "generate_stream_done"]
    assert h.events("g2")[-1]["error"] == "INVALID_PROMPT"


@pytest.mark.asyncio
async def test_close_acknowledges_then_requests_shutdown():
    h = _harness()
    await h.request(type="close", unique_request_id="c1")
    assert h.events("c1") == [{"unique_request_id": "c1", "type": "close_ack"}]
    assert h.closed is True


@pytest.mark.asyncio
async def test_disconnect_cancels_in_flight_generation():
    h = _harness(delay=5)
    await h.request(type="load", unique_request_id="l1", provider="echo")
    task = h.connection.accept(
        json.dumps({"type": "generate", "unique_request_id": "g1", "messages": [{"role": "user", "content": "hi"}], "params": PARAMS, "stream": False})
    )
    await asyncio.sleep(0.01)
    assert h.connection.operations.request_ids() == ["g1"]

    await h.connection.close()
    assert task.cancelled()
    assert [e["type"] for e in h.events("g1")] == ["generate_ack"]


@pytest.mark.asyncio
@respx.mock
async def test_openai_load_scenario_r1():
    respx.get("https://api.openai.com/v1/models").mock(return_value=httpx.Response(200, json={"data": [{"id": "gpt-4o-mini"}]}))
    h = Harness(build_default_registry(GatewayConfig()))

    await h.request(type="load", unique_request_id="r1", provider="openai", api_key="sk-test")
    assert h.events("r1") == [
        {"unique_request_id": "r1", "type": "load_ack", "provider": "openai"},
        {"unique_request_id": "r1", "type": "load_done", "provider": "openai", "is_error": False, "error": "SUCCESS"},
    ]
    await h.request(type="get_models", unique_request_id="m1")
    assert h.events("m1")[0]["models"] == ["gpt-4o-mini"]
    await h.connection.dispatcher.registry.unload()


@pytest.mark.asyncio
@respx.mock
async def test_novelai_stream_through_gateway():
    cfg = GatewayConfig(providers=ProvidersConfig(novelai=ProviderConfig(base_url="https://text.novelai.test")))
    respx.post("https://text.novelai.test/ai/generate").mock(return_value=httpx.Response(201, json={"output": "Hello DEV"}))
    h = Harness(build_default_registry(cfg))

    await h.request(type="load", unique_request_id="l1", provider="novelai", api_key="pst")
    await h.request(
        type="generate",
        unique_request_id="s1",
        messages=[{"role": "user", "content": "hi", "name": "DEV"}],
        params={**PARAMS, "model_id": "kayra-v1"},
        stream=True,
    )
    assert [(e["type"], e.get("chunk")) for e in h.events("s1")] == [
        ("generate_ack", None),
        ("generate_stream_chunk", "Hello DEV"),
        ("generate_stream_done", None),
    ]
    await h.connection.dispatcher.registry.unload()
