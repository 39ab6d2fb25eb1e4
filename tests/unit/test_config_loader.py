from __future__ import annotations

import pytest

from llmgate.core.config.loader import load_gateway_config


def test_config_loader_merges_defaults_and_instance(tmp_path):
    defaults = tmp_path / "defaults.yaml"
    defaults.write_text(
        """
server:
  host: 127.0.0.1
  port: 7562
client:
  ack_timeout_ms: 1000
providers:
  openai:
    base_url: https://api.openai.com/v1
""".strip(),
        encoding="utf-8",
    )

    instance = tmp_path / "instance.yaml"
    instance.write_text(
        """
server:
  port: 9000
providers:
  openai:
    request_timeout_seconds: 30
""".strip(),
        encoding="utf-8",
    )

    cfg = load_gateway_config(defaults_path=defaults, instance_path=instance)
    assert cfg.server.host == "127.0.0.1"
    assert cfg.server.port == 9000
    assert cfg.client.ack_timeout_ms == 1000
    assert cfg.providers.openai.base_url == "https://api.openai.com/v1"
    assert cfg.providers.openai.request_timeout_seconds == 30
    assert cfg.providers.groq.base_url.startswith("https://api.groq.com")


def test_config_loader_env_overrides(tmp_path, monkeypatch):
    defaults = tmp_path / "defaults.yaml"
    defaults.write_text("server:\n  port: 7562\n", encoding="utf-8")
    monkeypatch.setenv("LLMGATE_PORT", "8123")
    monkeypatch.setenv("LLMGATE_LOG_LEVEL", "DEBUG")

    cfg = load_gateway_config(defaults_path=defaults)
    assert cfg.server.port == 8123
    assert cfg.telemetry.log_level == "DEBUG"


def test_config_loader_missing_files_fall_back_to_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("LLMGATE_CONFIG_FILE", raising=False)
    monkeypatch.delenv("LLMGATE_PORT", raising=False)
    cfg = load_gateway_config(defaults_path=tmp_path / "missing.yaml")
    assert cfg.server.port == 7562
    assert cfg.generation_defaults.stop_tokens == ["\r", "\n"]
    assert cfg.generation_defaults.timeout_ms == 60_000


def test_config_loader_validation_error_is_clear(tmp_path):
    defaults = tmp_path / "defaults.yaml"
    defaults.write_text("server:\n  port: bad", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid llmgate configuration"):
        load_gateway_config(defaults_path=defaults)


def test_repo_defaults_file_is_valid():
    cfg = load_gateway_config(defaults_path="config/defaults.yaml", instance_path=None)
    assert cfg.server.port == 7562
    assert cfg.client.url == "ws://127.0.0.1:7562"
    assert cfg.providers.novelai.base_url == "https://text.novelai.net"
