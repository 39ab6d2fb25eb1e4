from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from llmgate.core.config.schema import GatewayConfig


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    content = yaml.safe_load(path.read_text(encoding="utf-8"))
    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return content


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    host = os.getenv("LLMGATE_HOST")
    if host:
        overrides.setdefault("server", {})["host"] = host
    port = os.getenv("LLMGATE_PORT")
    if port:
        overrides.setdefault("server", {})["port"] = port
    log_level = os.getenv("LLMGATE_LOG_LEVEL")
    if log_level:
        overrides.setdefault("telemetry", {})["log_level"] = log_level
    return overrides


def load_gateway_config(
    defaults_path: str | Path = "config/defaults.yaml",
    instance_path: str | Path | None = None,
) -> GatewayConfig:
    defaults = _load_yaml(Path(defaults_path))

    explicit_instance = instance_path or os.getenv("LLMGATE_CONFIG_FILE")
    instance = _load_yaml(Path(explicit_instance)) if explicit_instance else {}

    merged = _deep_merge(_deep_merge(defaults, instance), _env_overrides())

    try:
        return GatewayConfig.model_validate(merged)
    except ValidationError as exc:
        raise ValueError(f"Invalid llmgate configuration: {exc}") from exc
