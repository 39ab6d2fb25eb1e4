from __future__ import annotations

from collections.abc import Callable
from time import perf_counter
from typing import Any

from llmgate.core.config.schema import GatewayConfig
from llmgate.core.gateway.context import GatewayContext
from llmgate.core.providers.base import ProviderAdapter, free_quietly
from llmgate.core.providers.groq_adapter import GroqAdapter
from llmgate.core.providers.novelai_adapter import NovelAIAdapter
from llmgate.core.providers.openai_compatible import OpenAIAdapter
from llmgate.core.runtime.errors import ErrorKind, compact_error_summary
from llmgate.core.telemetry.logging import get_logger

AdapterFactory = Callable[[], ProviderAdapter]

logger = get_logger("llmgate.registry")


class ProviderRegistry:
    def __init__(self, context: GatewayContext | None = None) -> None:
        self.context = context or GatewayContext()
        self._factories: dict[str, AdapterFactory] = {}

    def register(self, name: str, factory: AdapterFactory) -> None:
        self._factories[name] = factory

    def names(self) -> list[str]:
        return sorted(self._factories.keys())

    def knows(self, name: str) -> bool:
        return name in self._factories

    async def unload(self) -> None:
        adapter = self.context.adapter
        self.context.clear()
        if adapter is not None:
            await free_quietly(adapter)

    async def load_provider(self, name: str, load_params: dict[str, Any]) -> ErrorKind:
        """Swap the active backend for ``name``.

        Whatever happens the previous adapter is freed first, and on any failure the context is
        left empty rather than holding a half initialized adapter.
        """
        factory = self._factories.get(name)
        await self.unload()

        if factory is None:
            logger.error("unknown_provider", provider=name, valid_providers=self.names())
            return ErrorKind.INVALID_PROVIDER

        started = perf_counter()
        adapter: ProviderAdapter | None = None
        try:
            adapter = factory()
            error = await adapter.init(load_params)
        except Exception as exc:  # noqa: BLE001
            logger.error("provider_init_crashed", provider=name, error=compact_error_summary(exc))
            error = ErrorKind.UNEXPECTED

        elapsed_ms = round((perf_counter() - started) * 1000, 2)
        if error.is_error or adapter is None:
            if adapter is not None:
                await free_quietly(adapter)
            logger.error("provider_load_failed", provider=name, error=error.value, latency_ms=elapsed_ms)
            return error

        self.context.install(name, adapter)
        logger.info("provider_loaded", provider=name, latency_ms=elapsed_ms)
        return ErrorKind.SUCCESS


def build_default_registry(cfg: GatewayConfig, context: GatewayContext | None = None) -> ProviderRegistry:
    registry = ProviderRegistry(context)
    registry.register("openai", lambda: OpenAIAdapter(cfg.providers.openai))
    registry.register("novelai", lambda: NovelAIAdapter(cfg.providers.novelai))
    registry.register("groq", lambda: GroqAdapter(cfg.providers.groq))
    return registry
