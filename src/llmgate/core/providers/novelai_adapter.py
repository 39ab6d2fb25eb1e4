from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from llmgate.core.config.schema import ProviderConfig
from llmgate.core.protocol.envelopes import ChatMessage, GenerationParameters
from llmgate.core.providers.base import ProviderAdapter
from llmgate.core.runtime.errors import ErrorKind, compact_error_summary

AVAILABLE_MODELS = ["kayra-v1", "llama-3-erato-v1"]
PROBE_MODEL = "llama-3-erato-v1"

# token id sequences that close a chat turn or open the next header
CHAT_STOP_SEQUENCES = [
    [91, 78694, 851, 91],
    [91, 7413, 3659, 4424, 91],
    [91, 408, 3659, 4424, 91],
    [128006, 198],
    [128007, 198],
]
CHAT_BANNED_TOKENS = [[32352]]

_SPECIAL_TOKEN_RE = re.compile(r"<\|.*?\|>|<\|.*?\||<\|\w*")


class NovelAIError(Exception):
    pass


def build_chat_prompt(messages: Sequence[ChatMessage], assistant_name: str, system_prompt: str = "") -> str:
    """Render chat turns with the llama 3 header template NovelAI text models were tuned on."""
    assistant = assistant_name or "assistant"
    parts = ["<|begin_of_text|>"]
    if system_prompt:
        parts.append(f"<|start_header_id|>system<|end_header_id|>\n\n{system_prompt}\n<|eot_id|>")
    for message in messages:
        if message.role == "assistant":
            header = assistant
        elif message.role == "system":
            header = "system"
        else:
            header = message.name or message.role
        parts.append(f"<|start_header_id|>{header}<|end_header_id|>\n\n{message.content}\n<|eot_id|>")
    parts.append(f"<|start_header_id|>{assistant}<|end_header_id|>\n\n")
    return "\n".join(parts)


def clean_output(text: str) -> str:
    return _SPECIAL_TOKEN_RE.sub("", text).strip()


class NovelAIAdapter(ProviderAdapter):
    """NovelAI text generation.

    The backend only answers whole completions here, so streaming is emulated by the base class:
    the full response is delivered as a single chunk followed by the done marker.
    """

    name = "novelai"
    streams_natively = False

    def __init__(self, config: ProviderConfig) -> None:
        super().__init__(config)
        self.base_url = config.base_url.rstrip("/")
        self._client: httpx.AsyncClient | None = None

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("novelai provider is not initialized")
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
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
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
        await self._generate_text("test", PROBE_MODEL, {"max_length": 10}, timeout=self.config.probe_timeout_seconds)

    async def _release(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()

    async def get_models(self) -> list[str]:
        return list(AVAILABLE_MODELS)

    def _check_request(self, messages: Sequence[ChatMessage], params: GenerationParameters) -> ErrorKind:
        if params.model_id not in AVAILABLE_MODELS:
            self.logger.error("invalid_model", provider=self.name, model_id=params.model_id, valid_models=AVAILABLE_MODELS)
            return ErrorKind.INVALID_MODEL
        return super()._check_request(messages, params)

    async def _generate_text(
        self, prompt: str, model: str, parameters: dict[str, Any], *, timeout: float | None = None
    ) -> str:
        request: dict[str, Any] = {"input": prompt, "model": model, "parameters": parameters}
        kwargs: dict[str, Any] = {"json": request}
        if timeout is not None:
            kwargs["timeout"] = timeout
        resp = await self._require_client().post("/ai/generate", **kwargs)
        resp.raise_for_status()
        try:
            output = resp.json().get("output")
        except ValueError as exc:
            raise NovelAIError(f"invalid response from NovelAI: {resp.text[:200]}") from exc
        if not output:
            raise NovelAIError(f"invalid response from NovelAI: {resp.text[:200]}")
        return output

    async def _complete(self, messages: Sequence[ChatMessage], params: GenerationParameters) -> str:
        prompt = build_chat_prompt(messages, params.character_name)
        stop_sequences = list(CHAT_STOP_SEQUENCES)
        if params.stop_tokens and all(isinstance(t, int) for t in params.stop_tokens):
            stop_sequences.append(list(params.stop_tokens))
        parameters = {
            "temperature": params.temperature,
            "max_length": params.max_output_length,
            "min_length": 1,
            "top_p": 0.995,
            "repetition_penalty": 1.5,
            "generate_until_sentence": True,
            "use_string": True,
            "return_full_text": False,
            "prefix": "vanilla",
            "bracket_ban": False,
            "stop_sequences": stop_sequences,
            "bad_words_ids": CHAT_BANNED_TOKENS,
        }
        return clean_output(await self._generate_text(prompt, params.model_id, parameters))
