from __future__ import annotations

from dataclasses import dataclass

from llmgate.core.providers.base import ProviderAdapter


@dataclass(slots=True)
class GatewayContext:
    """The process-wide active backend.

    Only ``ProviderRegistry`` writes to it; the dispatcher only reads. Loading while a generation is
    in flight on the adapter being replaced is the caller's responsibility.
    """

    adapter: ProviderAdapter | None = None
    provider_name: str | None = None

    @property
    def loaded(self) -> bool:
        return self.adapter is not None

    def install(self, name: str, adapter: ProviderAdapter) -> None:
        self.adapter = adapter
        self.provider_name = name

    def clear(self) -> None:
        self.adapter = None
        self.provider_name = None
