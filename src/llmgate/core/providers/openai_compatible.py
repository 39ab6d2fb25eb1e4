from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from llmgate.core.config.schema import ProviderConfig
from llmgate.core.protocol.envelopes import ChatMessage, GenerationParameters
from llmgate.core.providers.base import ProviderAdapter
from llmgate.core.runtime.errors import ErrorKind, compact_error_summary

# chat completion endpoints accept at most four stop strings
_MAX_STOP_SEQUENCES = 4


class OpenAICompatibleAdapter(ProviderAdapter):
    """Chat-completions backend speaking the OpenAI wire format over httpx."""

    name = "openai_compatible"
    streams_natively = True

    def __init__(self, config: ProviderConfig) -> None:
        super().__init__(config)
        self.base_url = config.base_url.rstrip("/")
        self._client: httpx.AsyncClient | None = None

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{self.name} provider is not initialized")
        return self._client

    async def init(self, load_params: dict[str, Any]) -> ErrorKind:
        api_key = load_params.get("api_key")
        if not api_key:
            self.logger.error(
                "load_missing_api_key",
                provider=self.name,
                example={"type": "load", "provider": self.name, "api_key": "<api key>"},
            )
            return ErrorKind.AUTHORIZATION

        await self._release()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(api_key),
            timeout=self.config.request_timeout_seconds,
        )
        try:
            await self._probe()
        except Exception as exc:  # noqa: BLE001
            self.logger.error("probe_failed_assuming_invalid_api_key", provider=self.name, error=compact_error_summary(exc))
            await self._release()
            return ErrorKind.AUTHORIZATION
        return ErrorKind.SUCCESS

    @retry(stop=stop_after_attempt(2), wait=wait_fixed(0.2), retry=retry_if_exception_type(httpx.TransportError), reraise=True)
    async def _probe(self) -> None:
        resp = await self._require_client().get("/models", timeout=self.config.probe_timeout_seconds)
        resp.raise_for_status()

    async def _release(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()

    async def get_models(self) -> list[str]:
        resp = await self._require_client().get("/models")
        resp.raise_for_status()
        return [item["id"] for item in resp.json().get("data", []) if "id" in item]

    def _payload(self, messages: Sequence[ChatMessage], params: GenerationParameters, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": params.model_id,
            "messages": [m.model_dump(exclude_none=True) for m in messages],
            "temperature": params.temperature,
            "max_completion_tokens": params.max_output_length,
            "stream": stream,
        }
        stop = [t for t in params.stop_tokens or [] if isinstance(t, str)]
        if stop:
            payload["stop"] = stop[:_MAX_STOP_SEQUENCES]
        return payload

    async def _complete(self, messages: Sequence[ChatMessage], params: GenerationParameters) -> str:
        resp = await self._require_client().post("/chat/completions", json=self._payload(messages, params, stream=False))
        resp.raise_for_status()
        body = resp.json()
        return body.get("choices", [{}])[0].get("message", {}).get("content") or ""

    async def _stream(self, messages: Sequence[ChatMessage], params: GenerationParameters) -> AsyncIterator[str]:
        client = self._require_client()
        payload = self._payload(messages, params, stream=True)
        async with client.stream("POST", "/chat/completions", json=payload) as response:
            if response.status_code >= 400:
                await response.aread()
                response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    continue
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                content = (choices[0].get("delta") or {}).get("content")
                if content:
                    yield content


class OpenAIAdapter(OpenAICompatibleAdapter):
    name = "openai"
