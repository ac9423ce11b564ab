"""
Shellgate · Configuration system.

Loads configuration from:
  1. Defaults (defined here)
  2. ~/.shellgate/config.yaml (overrides defaults)
  3. Environment variables SHELLGATE_* (overrides everything)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from shellgate.models import ModelSpec

log = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".shellgate"
FOUNDRY_LOCAL_ENDPOINT = "http://127.0.0.1:56984/v1"

# ============================================================================
# Provider-Konfiguration
# ============================================================================


class AzureOpenAIProviderConfig(BaseModel):
    """Cloud-Backend (Azure OpenAI kompatibel)."""

    type: Literal["azure-openai"] = "azure-openai"
    endpoint: str
    api_version: str = "2024-10-01-preview"
    api_key: str = ""
    api_key_secret: str = ""  # Name des Secrets, wird beim Start aufgelöst
    use_managed_identity: bool = False
    timeout_seconds: int = Field(default=120, ge=5, le=600)
    models: list[ModelSpec] = Field(default_factory=list)


class FoundryLocalProviderConfig(BaseModel):
    """On-Device-Backend (Foundry Local)."""

    type: Literal["foundry-local"] = "foundry-local"
    model_alias: str
    model_ttl: int = Field(default=600, ge=1)
    host: str = FOUNDRY_LOCAL_ENDPOINT
    cli_path: str = "foundry"
    initial_check_seconds: float = Field(default=5.0, ge=0.0)
    load_timeout_seconds: float = Field(default=120.0, ge=1.0)
    poll_interval_seconds: float = Field(default=2.0, gt=0.0)
    timeout_seconds: int = Field(default=300, ge=5, le=1800)


class MockProviderConfig(BaseModel):
    """Mock-Backend für lokale Entwicklung ohne echte Modelle."""

    type: Literal["mock"] = "mock"
    models: list[ModelSpec] = Field(
        default_factory=lambda: [ModelSpec(id="mock-model", name="Mock Model")]
    )
    latency_seconds: float = Field(default=0.0, ge=0.0)


ProviderConfig = Annotated[
    AzureOpenAIProviderConfig | FoundryLocalProviderConfig | MockProviderConfig,
    Field(discriminator="type"),
]


# ============================================================================
# Komponenten-Konfiguration
# ============================================================================


class AgentConfig(BaseModel):
    """Turn-Verhalten des Agenten."""

    primary_model: str = "mock/mock-model"
    system_prompt_additions: str = ""
    max_context_tokens: int = Field(default=8000, ge=256)
    max_blocks_per_turn: int = Field(default=10, ge=1, le=100)
    enable_reasoning: bool = False
    reasoning_effort: Literal["low", "medium", "high"] = "medium"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    busy_policy: Literal["queue", "reject"] = "queue"

    @model_validator(mode="after")
    def _check_primary_model(self) -> AgentConfig:
        provider, _, model = self.primary_model.partition("/")
        if not provider or not model:
            raise ValueError(
                f"primary_model must look like 'provider/model', got {self.primary_model!r}"
            )
        return self


class BreakerConfig(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=2, ge=1)
    timeout_seconds: float = Field(default=60.0, gt=0.0)
    reset_timeout_seconds: float = Field(default=30.0, gt=0.0)


class ExecutorConfig(BaseModel):
    """Sandboxed Session Executor."""

    type: Literal["mock", "local", "session"] = "mock"
    nu_path: str = "nu"
    workspace_dir: Path | None = None  # None = <home>/workspace
    session_pool_endpoint: str = ""
    default_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    max_output_bytes: int = Field(default=1_000_000, ge=1024)
    session_idle_seconds: float = Field(default=1800.0, gt=0.0)
    env_passthrough: list[str] = Field(default_factory=lambda: ["PATH", "HOME", "LANG"])

    @model_validator(mode="after")
    def _check_endpoint(self) -> ExecutorConfig:
        if self.type == "session" and not self.session_pool_endpoint:
            raise ValueError("executor.session_pool_endpoint is required for type 'session'")
        return self


class SafetyConfig(BaseModel):
    """Script Safety Gate."""

    max_script_bytes: int = Field(default=100 * 1024, ge=1)
    max_pipeline_depth: int = Field(default=20, ge=1)
    extra_blocked_patterns: list[str] = Field(default_factory=list)


class StoreConfig(BaseModel):
    backend: Literal["memory", "sqlite"] = "memory"
    sqlite_path: Path | None = None  # None = <home>/conversations.db


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_logs: bool = False
    console: bool = True
    log_dir: Path | None = None  # None = <home>/logs


# ============================================================================
# Hauptkonfiguration
# ============================================================================


class ShellgateConfig(BaseModel):
    """Complete configuration tree."""

    home: Path = Field(default_factory=lambda: DEFAULT_HOME)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    providers: dict[str, ProviderConfig] = Field(
        default_factory=lambda: {"mock": MockProviderConfig()}
    )
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def config_file(self) -> Path:
        return self.home / "config.yaml"

    @property
    def workspace_dir(self) -> Path:
        return self.executor.workspace_dir or self.home / "workspace"

    @property
    def logs_dir(self) -> Path:
        return self.logging.log_dir or self.home / "logs"

    @property
    def sqlite_path(self) -> Path:
        return self.store.sqlite_path or self.home / "conversations.db"

    @property
    def primary_provider(self) -> str:
        return self.agent.primary_model.partition("/")[0]


# ============================================================================
# Laden
# ============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Tiefes Mergen von zwei Dicts. Override gewinnt bei Konflikten."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(data: dict[str, Any], prefix: str = "SHELLGATE_") -> dict[str, Any]:
    """Wendet SHELLGATE_* Umgebungsvariablen an.

    Konvention: SHELLGATE_SECTION_KEY → data["section"]["key"]
    Beispiel: SHELLGATE_BREAKER_FAILURE_THRESHOLD → data["breaker"]["failure_threshold"]

    Bekannte Sektionen werden auch angelegt wenn die YAML sie nicht enthält,
    damit mehrteilige Schlüssel (``failure_threshold``) nicht zerlegt werden.
    """
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        parts = key[len(prefix):].lower().split("_")
        if len(parts) == 1:
            data[parts[0]] = value
            continue

        node = data
        consumed = 0
        for i in range(len(parts) - 1):
            candidate = parts[i]
            if candidate in node and isinstance(node[candidate], dict):
                node = node[candidate]
                consumed = i + 1
            else:
                break
        if consumed == 0:
            section = parts[0]
            node = data.setdefault(section, {})
            if not isinstance(node, dict):
                continue
            consumed = 1
        leaf_key = "_".join(parts[consumed:])
        if leaf_key:
            node[leaf_key] = value
    return data


def load_config(config_path: Path | None = None) -> ShellgateConfig:
    """Lädt die Konfiguration.

    Reihenfolge (spätere überschreiben frühere):
      1. Defaults (in den Pydantic-Modellen)
      2. config.yaml (wenn vorhanden)
      3. SHELLGATE_* Umgebungsvariablen

    Args:
        config_path: Expliziter Pfad zur config.yaml. Wenn None: ~/.shellgate/config.yaml

    Returns:
        Vollständig validierte ShellgateConfig.
    """
    data: dict[str, Any] = {}

    if config_path is None:
        config_path = DEFAULT_HOME / "config.yaml"

    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            if isinstance(file_data, dict):
                data = file_data
        except yaml.YAMLError as exc:
            log.warning("Fehlerhafte config.yaml wird ignoriert: %s", exc)

    data = _apply_env_overrides(data)

    return ShellgateConfig(**data)
