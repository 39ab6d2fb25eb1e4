from __future__ import annotations

import inspect
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, WebSocket

from llmgate import __version__
from llmgate.cli import base_parser
from llmgate.core.config.loader import load_gateway_config
from llmgate.core.config.schema import GatewayConfig
from llmgate.core.gateway.connection import GatewayConnection
from llmgate.core.gateway.dispatcher import CloseHook
from llmgate.core.providers.registry import ProviderRegistry, build_default_registry
from llmgate.core.telemetry.logging import configure_logging, get_logger

logger = get_logger("llmgate.server")


def create_app(
    cfg: GatewayConfig | None = None,
    registry: ProviderRegistry | None = None,
    on_close: CloseHook | None = None,
) -> FastAPI:
    cfg = cfg or GatewayConfig()
    registry = registry or build_default_registry(cfg)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        await registry.unload()

    app = FastAPI(title="llmgate", version=__version__, lifespan=lifespan)
    app.state.registry = registry
    app.state.close_requested = False

    async def _request_close() -> None:
        app.state.close_requested = True
        logger.info("shutdown_requested")
        if on_close is not None:
            result = on_close()
            if inspect.isawaitable(result):
                await result

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "ok",
            "provider": registry.context.provider_name,
            "providers": registry.names(),
            "version": __version__,
        }

    @app.websocket("/")
    async def gateway(websocket: WebSocket) -> None:
        await websocket.accept()
        connection = GatewayConnection(registry, websocket.send_text, on_close=_request_close)
        client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        logger.info("client_connected", client=client)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue
                connection.accept(raw)
        finally:
            await connection.close()
            logger.info("client_disconnected", client=client)

    return app


def main(argv: list[str] | None = None) -> int:
    parser = base_parser("llmgate-server", "llmgate WebSocket gateway")
    parser.add_argument("port_arg", nargs="?", type=int, default=None, metavar="PORT", help="Port to listen on")
    parser.add_argument("--config", default=None, help="Instance config file path")
    parser.add_argument("--defaults", default="config/defaults.yaml", help="Defaults config file path")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return 0 if exc.code in (0, None) else 1

    try:
        cfg = load_gateway_config(defaults_path=args.defaults, instance_path=args.config)
    except ValueError as exc:
        print(f"config-invalid error={exc}")
        return 1
    configure_logging(cfg.telemetry.log_level, cfg.telemetry.json_logs)

    host = args.host or cfg.server.host
    port = args.port if args.port is not None else args.port_arg if args.port_arg is not None else cfg.server.port

    server: uvicorn.Server | None = None

    def _stop_server() -> None:
        if server is not None:
            server.should_exit = True

    app = create_app(cfg, on_close=_stop_server)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level=cfg.telemetry.log_level.lower()))
    logger.info("gateway_starting", host=host, port=port, version=__version__)
    try:
        server.run()
    except SystemExit as exc:
        # uvicorn exits the process when the socket cannot be bound
        logger.error("gateway_failed", host=host, port=port, code=exc.code)
        return 1

    if not app.state.close_requested:
        logger.warning("gateway_stopped_without_close", host=host, port=port)
        return 1
    logger.info("gateway_stopped", host=host, port=port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
