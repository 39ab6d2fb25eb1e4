from __future__ import annotations

from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=7562, ge=1, le=65535)


class ClientConfig(BaseModel):
    url: str = "ws://127.0.0.1:7562"
    ack_timeout_ms: int = Field(default=1000, gt=0)
    connect_timeout_seconds: float = 5.0


class TelemetryConfig(BaseModel):
    log_level: str = "INFO"
    json_logs: bool = True


class ProviderConfig(BaseModel):
    base_url: str
    probe_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 120.0


class ProvidersConfig(BaseModel):
    openai: ProviderConfig = Field(default_factory=lambda: ProviderConfig(base_url="https://api.openai.com/v1"))
    groq: ProviderConfig = Field(default_factory=lambda: ProviderConfig(base_url="https://api.groq.com/openai/v1"))
    novelai: ProviderConfig = Field(default_factory=lambda: ProviderConfig(base_url="https://text.novelai.net"))


class GenerationDefaults(BaseModel):
    character_name: str = "AI"
    temperature: float = 1.0
    max_output_length: int = 200
    stop_tokens: list[str] | list[int] | None = Field(default_factory=lambda: ["\r", "\n"])
    timeout_ms: int | None = 60_000


class GatewayConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    generation_defaults: GenerationDefaults = Field(default_factory=GenerationDefaults)
