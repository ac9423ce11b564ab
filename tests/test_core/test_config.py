"""
Tests für shellgate.config – Konfigurationssystem.

Testet:
  - Config mit Defaults
  - Config aus YAML-Datei (inkl. Provider-Union)
  - Umgebungsvariablen-Override
  - Validierung von primary_model und Executor
  - Pfad-Properties
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from shellgate.config import (
    AgentConfig,
    AzureOpenAIProviderConfig,
    ExecutorConfig,
    FoundryLocalProviderConfig,
    MockProviderConfig,
    ShellgateConfig,
    load_config,
)


class TestDefaults:
    def test_default_home(self) -> None:
        assert ShellgateConfig().home == Path.home() / ".shellgate"

    def test_mock_stack_by_default(self) -> None:
        config = ShellgateConfig()
        assert config.agent.primary_model == "mock/mock-model"
        assert isinstance(config.providers["mock"], MockProviderConfig)
        assert config.executor.type == "mock"
        assert config.store.backend == "memory"
        assert config.primary_provider == "mock"

    def test_breaker_defaults(self) -> None:
        breaker = ShellgateConfig().breaker
        assert breaker.failure_threshold == 5
        assert breaker.success_threshold == 2
        assert breaker.timeout_seconds == 60.0
        assert breaker.reset_timeout_seconds == 30.0

    def test_agent_defaults(self) -> None:
        agent = AgentConfig()
        assert agent.max_context_tokens == 8000
        assert agent.max_blocks_per_turn == 10
        assert agent.busy_policy == "queue"
        assert agent.enable_reasoning is False


class TestPaths:
    def test_paths_relative_to_home(self, config: ShellgateConfig) -> None:
        home = config.home
        assert config.config_file == home / "config.yaml"
        assert config.workspace_dir == home / "workspace"
        assert config.logs_dir == home / "logs"
        assert config.sqlite_path == home / "conversations.db"

    def test_explicit_paths_win(self, tmp_path: Path) -> None:
        config = ShellgateConfig(
            home=tmp_path,
            executor={"workspace_dir": tmp_path / "ws"},
            store={"sqlite_path": tmp_path / "db" / "c.db"},
        )
        assert config.workspace_dir == tmp_path / "ws"
        assert config.sqlite_path == tmp_path / "db" / "c.db"


class TestValidation:
    @pytest.mark.parametrize("path", ["gpt-4o", "azure/", "/gpt-4o"])
    def test_invalid_primary_model(self, path: str) -> None:
        with pytest.raises(ValidationError):
            AgentConfig(primary_model=path)

    def test_session_executor_needs_endpoint(self) -> None:
        with pytest.raises(ValidationError):
            ExecutorConfig(type="session")
        assert ExecutorConfig(type="session", session_pool_endpoint="https://pool").type == "session"

    def test_unknown_provider_type(self) -> None:
        with pytest.raises(ValidationError):
            ShellgateConfig(providers={"x": {"type": "ollama"}})


class TestLoadConfig:
    def test_defaults_when_no_file(self, tmp_path: Path) -> None:
        config = load_config(tmp_path / "nonexistent" / "config.yaml")
        assert config.agent.primary_model == "mock/mock-model"

    def test_load_from_yaml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            """
agent:
  primary_model: azure/gpt-4o
  busy_policy: reject

providers:
  azure:
    type: azure-openai
    endpoint: https://my-res.openai.azure.com
    api_key_secret: azure-openai-key
    models:
      - id: gpt-4o
        cost: {input: 2.5, output: 10.0}
  foundry:
    type: foundry-local
    model_alias: phi-4-mini
    model_ttl: 900

breaker:
  failure_threshold: 3

logging:
  level: DEBUG
""",
            encoding="utf-8",
        )
        config = load_config(config_file)

        assert config.agent.primary_model == "azure/gpt-4o"
        assert config.agent.busy_policy == "reject"
        azure = config.providers["azure"]
        assert isinstance(azure, AzureOpenAIProviderConfig)
        assert azure.models[0].cost.output == 10.0
        foundry = config.providers["foundry"]
        assert isinstance(foundry, FoundryLocalProviderConfig)
        assert foundry.model_ttl == 900
        assert config.breaker.failure_threshold == 3
        assert config.logging.level == "DEBUG"
        # Nicht überschriebene Werte bleiben Default
        assert config.breaker.reset_timeout_seconds == 30.0

    def test_empty_yaml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")
        assert load_config(config_file).executor.type == "mock"

    def test_broken_yaml_falls_back_to_defaults(self, tmp_path: Path) -> None:
        config_file = tmp_path / "config.yaml"
        config_file.write_text("agent: [unclosed")
        assert load_config(config_file).agent.primary_model == "mock/mock-model"

    def test_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SHELLGATE_BREAKER_FAILURE_THRESHOLD", "7")
        monkeypatch.setenv("SHELLGATE_AGENT_MAX_CONTEXT_TOKENS", "4000")
        config = load_config(tmp_path / "nonexistent.yaml")
        assert config.breaker.failure_threshold == 7
        assert config.agent.max_context_tokens == 4000

    def test_env_beats_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "config.yaml"
        config_file.write_text("executor:\n  default_timeout_seconds: 10\n")
        monkeypatch.setenv("SHELLGATE_EXECUTOR_DEFAULT_TIMEOUT_SECONDS", "45")
        assert load_config(config_file).executor.default_timeout_seconds == 45.0

    def test_env_invalid_value_rejected(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SHELLGATE_AGENT_PRIMARY_MODEL", "no-slash")
        with pytest.raises(ValidationError):
            load_config(tmp_path / "nonexistent.yaml")


class TestSerialization:
    def test_roundtrip(self, config: ShellgateConfig) -> None:
        restored = ShellgateConfig.model_validate(config.model_dump())
        assert restored == config
