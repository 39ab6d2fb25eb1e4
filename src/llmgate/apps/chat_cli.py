from __future__ import annotations

import asyncio
import os
from collections.abc import Callable

from llmgate.cli import base_parser
from llmgate.client import GatewayClient
from llmgate.core.config.loader import load_gateway_config
from llmgate.core.runtime.errors import GatewayError
from llmgate.core.telemetry.logging import configure_logging

DEFAULT_PROMPT = "Say hello and introduce yourself in one sentence."


def _build_messages(character_name: str, prompt: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": f"You are {character_name}, a friendly assistant."},
        {"role": "user", "content": prompt, "name": "user"},
    ]


async def run_demo(
    client: GatewayClient,
    *,
    provider: str,
    api_key: str | None,
    model_id: str | None,
    prompt: str,
    output_func: Callable[..., None] = print,
    shutdown: bool = False,
) -> None:
    output_func(f"providers={await client.get_providers()}")
    await client.load_provider(provider, api_key=api_key)
    models = await client.get_models()
    output_func(f"models={models}")
    model = model_id or (models[0] if models else "")
    messages = _build_messages(client.generation_defaults.character_name, prompt)

    output_func("generate:")
    output_func(await client.generate(messages, model_id=model, stop_tokens=None))

    output_func("generate_stream:")
    await client.generate_stream(
        messages,
        lambda chunk: output_func(chunk, end="", flush=True),
        model_id=model,
        stop_tokens=None,
    )
    output_func("")

    if shutdown:
        await client.close()


def main() -> int:
    parser = base_parser("llmgate-chat", "llmgate demo chat client")
    parser.add_argument("--config", default=None, help="Instance config file path")
    parser.add_argument("--url", default=None, help="Gateway WebSocket URL")
    parser.add_argument("--provider", default=None)
    parser.add_argument("--api-key", default=None, help="Backend API key (default: $LLMGATE_API_KEY)")
    parser.add_argument("--model", default=None, help="Model id (default: first listed model)")
    parser.add_argument("--prompt", default=DEFAULT_PROMPT)
    parser.add_argument("--shutdown", action="store_true", help="Send close to the gateway when done")
    args = parser.parse_args()

    try:
        cfg = load_gateway_config(instance_path=args.config)
    except ValueError as exc:
        print(f"config-invalid error={exc}")
        return 1
    configure_logging(cfg.telemetry.log_level, cfg.telemetry.json_logs)
    if args.url:
        cfg.client.url = args.url

    try:
        provider = args.provider or input("Provider (openai, groq, novelai): ").strip()
        api_key = args.api_key or os.getenv("LLMGATE_API_KEY") or input(f"{provider} API key: ").strip()

        async def _session() -> None:
            async with await GatewayClient.from_config(cfg) as client:
                await run_demo(
                    client,
                    provider=provider,
                    api_key=api_key or None,
                    model_id=args.model,
                    prompt=args.prompt,
                    shutdown=args.shutdown,
                )

        asyncio.run(_session())
    except KeyboardInterrupt:
        print("Chat cancelled.")
        return 130
    except GatewayError as exc:
        print(f"Chat failed: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
