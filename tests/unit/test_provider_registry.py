from __future__ import annotations

import pytest

from llmgate.core.config.schema import GatewayConfig
from llmgate.core.providers.base import ProviderAdapter
from llmgate.core.providers.registry import ProviderRegistry, build_default_registry
from llmgate.core.runtime.errors import ErrorKind


class StubAdapter(ProviderAdapter):
    name = "stub"

    def __init__(self, init_result=ErrorKind.SUCCESS, crash=False):
        super().__init__()
        self.init_result = init_result
        self.crash = crash
        self.freed = False
        self.load_params = None

    async def init(self, load_params):
        self.load_params = load_params
        if self.crash:
            raise RuntimeError("init exploded")
        return self.init_result

    async def get_models(self):
        return ["stub-1"]

    async def _release(self):
        self.freed = True


def _registry(**adapters: StubAdapter) -> ProviderRegistry:
    registry = ProviderRegistry()
    for name, adapter in adapters.items():
        registry.register(name, lambda adapter=adapter: adapter)
    return registry


@pytest.mark.asyncio
async def test_load_installs_adapter_and_passes_params():
    adapter = StubAdapter()
    registry = _registry(stub=adapter)

    error = await registry.load_provider("stub", {"api_key": "k"})
    assert error is ErrorKind.SUCCESS
    assert registry.context.adapter is adapter
    assert registry.context.provider_name == "stub"
    assert adapter.load_params == {"api_key": "k"}


@pytest.mark.asyncio
async def test_unknown_provider_frees_previous_and_leaves_nothing_loaded():
    previous = StubAdapter()
    registry = _registry(stub=previous)
    await registry.load_provider("stub", {})

    error = await registry.load_provider("nope", {})
    assert error is ErrorKind.INVALID_PROVIDER
    assert previous.freed is True
    assert registry.context.loaded is False
    assert registry.context.provider_name is None


@pytest.mark.asyncio
async def test_failed_init_is_freed_and_not_installed():
    bad = StubAdapter(init_result=ErrorKind.AUTHORIZATION)
    registry = _registry(bad=bad)

    assert await registry.load_provider("bad", {"api_key": "wrong"}) is ErrorKind.AUTHORIZATION
    assert bad.freed is True
    assert registry.context.adapter is None


@pytest.mark.asyncio
async def test_crashing_init_reports_unexpected():
    crashing = StubAdapter(crash=True)
    registry = _registry(crash=crashing)

    assert await registry.load_provider("crash", {}) is ErrorKind.UNEXPECTED
    assert crashing.freed is True
    assert registry.context.loaded is False


@pytest.mark.asyncio
async def test_swapping_providers_frees_the_old_adapter():
    first, second = StubAdapter(), StubAdapter()
    registry = _registry(first=first, second=second)

    await registry.load_provider("first", {})
    await registry.load_provider("second", {})
    assert first.freed is True
    assert second.freed is False
    assert registry.context.provider_name == "second"

    await registry.unload()
    assert second.freed is True
    assert registry.context.loaded is False


def test_default_registry_lists_builtin_backends():
    registry = build_default_registry(GatewayConfig())
    assert registry.names() == ["groq", "novelai", "openai"]
    assert registry.knows("openai")
    assert not registry.knows("llama_cpp")
