"""LLM provider clients: one uniform interface for cloud and on-device models.

  - AzureOpenAIBackend: cloud chat completions, API key or bearer token auth,
    per-token billing from the configured ModelSpec.
  - FoundryLocalBackend: on-device inference. Ensures the model is loaded
    (launching the CLI detached if needed) and serializes requests FIFO.
  - MockLLMBackend: canned responses for local development.
"""

from __future__ import annotations

import asyncio
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import httpx

from shellgate.config import FOUNDRY_LOCAL_ENDPOINT
from shellgate.core.process_launcher import DetachedProcessLauncher, ProcessLauncher
from shellgate.models import ChatMessage, ModelCost, ModelSpec, TokenUsage, calculate_cost
from shellgate.utils.logging import get_logger

log = get_logger(__name__)

TokenProvider = Callable[[], Awaitable[str]]


# ============================================================================
# Typen und Datenklassen
# ============================================================================


class ProviderType(StrEnum):
    AZURE_OPENAI = "azure-openai"
    FOUNDRY_LOCAL = "foundry-local"
    MOCK = "mock"


@dataclass
class ChatOptions:
    """Provider-independent chat request. The model is chosen by the registry."""

    messages: list[ChatMessage]
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop: list[str] | None = None
    reasoning: bool = False
    reasoning_effort: str = "medium"


@dataclass
class ChatResult:
    """Unified response from all backends.

    Attributes:
        content: Response text.
        finish_reason: Why generation stopped.
        usage: Token consumption, with estimated cost when the model is priced.
        model: Model that produced the answer.
        reasoning: Reasoning trace, only for reasoning-capable models.
        raw: Original backend response for debugging.
    """

    content: str = ""
    finish_reason: str = "stop"
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    reasoning: str | None = None
    raw: dict[str, Any] | None = None


class LLMBackendError(Exception):
    """Error communicating with a model provider."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _payload_messages(messages: list[ChatMessage]) -> list[dict[str, str]]:
    return [{"role": str(m.role), "content": m.content} for m in messages]


def _parse_usage(data: dict[str, Any], spec: ModelSpec | None) -> TokenUsage:
    usage = data.get("usage") or {}
    prompt = int(usage.get("prompt_tokens", 0) or 0)
    completion = int(usage.get("completion_tokens", 0) or 0)
    total = int(usage.get("total_tokens", 0) or 0) or prompt + completion
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
        estimated_cost=calculate_cost(spec, prompt, completion) if spec else None,
    )


# ============================================================================
# Abstrakte Basis
# ============================================================================


class ProviderClient(ABC):
    """Abstract interface for model providers."""

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Typ des Providers."""
        ...

    async def initialize(self) -> None:  # noqa: B027
        """Einmalige Vorbereitung (z.B. Modell laden). Default: nichts."""

    @abstractmethod
    async def chat(self, model: str, options: ChatOptions) -> ChatResult:
        """Sendet eine Chat-Anfrage und wartet auf die vollständige Antwort."""
        ...

    @abstractmethod
    def get_models(self) -> list[ModelSpec]: ...

    def get_model(self, model_id: str) -> ModelSpec | None:
        for spec in self.get_models():
            if spec.id == model_id:
                return spec
        return None

    @abstractmethod
    async def health_check(self) -> bool:
        """Prüft ob der Provider erreichbar ist."""
        ...

    async def close(self) -> None:  # noqa: B027
        """Gibt Verbindungen frei."""


# ============================================================================
# Cloud-Backend (Azure OpenAI)
# ============================================================================


class AzureOpenAIBackend(ProviderClient):
    """Azure OpenAI chat completions.

    Exactly one of ``api_key`` or ``token_provider`` authenticates requests.

    Args:
        endpoint: Resource endpoint, e.g. ``https://my-res.openai.azure.com``.
        models: Deployments offered by this provider.
        api_key: Static API key (``api-key`` header).
        token_provider: Async callable returning a bearer token.
        api_version: REST API version.
        timeout: Read timeout in seconds.
    """

    def __init__(
        self,
        endpoint: str,
        models: list[ModelSpec],
        *,
        api_key: str = "",
        token_provider: TokenProvider | None = None,
        api_version: str = "2024-10-01-preview",
        timeout: int = 120,
    ) -> None:
        if not api_key and token_provider is None:
            raise LLMBackendError(
                "Azure OpenAI provider requires either managed identity or an API key"
            )
        self._endpoint = endpoint.rstrip("/")
        self._models = list(models)
        self._api_key = api_key
        self._token_provider = token_provider
        self._api_version = api_version
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.AZURE_OPENAI

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers: dict[str, str] = {"Content-Type": "application/json"}
            if self._api_key:
                headers["api-key"] = self._api_key
            self._client = httpx.AsyncClient(
                base_url=self._endpoint,
                headers=headers,
                timeout=httpx.Timeout(connect=10.0, read=float(self._timeout), write=30.0, pool=10.0),
                trust_env=False,
            )
        return self._client

    async def _auth_headers(self) -> dict[str, str]:
        if self._token_provider is None:
            return {}
        token = await self._token_provider()
        return {"Authorization": f"Bearer {token}"}

    async def chat(self, model: str, options: ChatOptions) -> ChatResult:
        spec = self.get_model(model)
        if spec is None:
            raise LLMBackendError(f"Model {model} not found in provider configuration")

        client = await self._ensure_client()
        payload: dict[str, Any] = {
            "messages": _payload_messages(options.messages),
            "max_tokens": options.max_tokens or spec.max_tokens,
            "temperature": options.temperature if options.temperature is not None else 0.7,
            "stream": False,
        }
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop:
            payload["stop"] = options.stop
        if options.reasoning and spec.reasoning:
            payload["reasoning_effort"] = options.reasoning_effort

        start = time.monotonic()
        try:
            resp = await client.post(
                f"/openai/deployments/{model}/chat/completions",
                params={"api-version": self._api_version},
                json=payload,
                headers=await self._auth_headers(),
            )
        except httpx.TimeoutException as exc:
            raise LLMBackendError(f"Azure OpenAI Timeout nach {self._timeout}s") from exc
        except httpx.ConnectError as exc:
            raise LLMBackendError(f"Azure OpenAI nicht erreichbar: {self._endpoint}") from exc

        if resp.status_code != 200:
            raise LLMBackendError(
                f"Azure OpenAI HTTP {resp.status_code}: {resp.text[:500]}",
                status_code=resp.status_code,
            )

        data = resp.json()
        choices = data.get("choices") or []
        if not choices:
            raise LLMBackendError("No completion choice returned from Azure OpenAI")
        choice = choices[0]
        msg = choice.get("message") or {}

        reasoning = None
        if spec.reasoning:
            reasoning = msg.get("reasoning") or msg.get("reasoning_content") or None

        result = ChatResult(
            content=msg.get("content") or "",
            finish_reason=choice.get("finish_reason") or "unknown",
            usage=_parse_usage(data, spec),
            model=data.get("model", model),
            reasoning=reasoning,
            raw=data,
        )
        log.debug(
            "azure_openai_chat",
            model=model,
            duration_ms=int((time.monotonic() - start) * 1000),
            tokens=result.usage.total_tokens,
            finish_reason=result.finish_reason,
        )
        return result

    def get_models(self) -> list[ModelSpec]:
        return list(self._models)

    async def health_check(self) -> bool:
        if not self._models:
            return False
        try:
            await self.chat(
                self._models[0].id,
                ChatOptions(messages=[ChatMessage(role="user", content="ping")], max_tokens=1),
            )
            return True
        except (LLMBackendError, httpx.HTTPError) as exc:
            log.warning("azure_openai_health_failed", error=str(exc))
            return False

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ============================================================================
# On-Device-Backend (Foundry Local)
# ============================================================================


class FoundryLocalBackend(ProviderClient):
    """On-device inference through the Foundry Local OpenAI-compatible API.

    :meth:`initialize` makes sure the model is loaded: it checks the model
    listing briefly, and if the model is absent launches
    ``foundry model run <alias> --ttl <ttl>`` as a detached process and polls
    until the model shows up or the load timeout expires.

    Requests are serialized through a FIFO lock; the device handles one
    inference at a time.
    """

    def __init__(
        self,
        model_alias: str,
        *,
        ttl: int = 600,
        host: str = FOUNDRY_LOCAL_ENDPOINT,
        cli_path: str = "foundry",
        launcher: ProcessLauncher | None = None,
        initial_check_seconds: float = 5.0,
        load_timeout_seconds: float = 120.0,
        poll_interval_seconds: float = 2.0,
        timeout: int = 300,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._alias = model_alias
        self._ttl = ttl
        self._host = host.rstrip("/")
        self._cli_path = cli_path
        self._launcher = launcher or DetachedProcessLauncher()
        self._initial_check = initial_check_seconds
        self._load_timeout = load_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._timeout = timeout
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()
        self._model_id: str | None = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.FOUNDRY_LOCAL

    @property
    def model_id(self) -> str | None:
        return self._model_id

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._host,
                headers={"Content-Type": "application/json"},
                timeout=httpx.Timeout(connect=5.0, read=float(self._timeout), write=30.0, pool=10.0),
                trust_env=False,
            )
        return self._client

    async def list_models(self) -> list[str]:
        client = await self._ensure_client()
        resp = await client.get("/models", timeout=5.0)
        resp.raise_for_status()
        return [m["id"] for m in resp.json().get("data", [])]

    async def _find_model(self) -> str | None:
        try:
            ids = await self.list_models()
        except httpx.HTTPError:
            return None  # Dienst noch nicht bereit
        alias = self._alias.lower()
        for model_id in ids:
            if alias in model_id.lower():
                return model_id
        return None

    async def wait_for_model(self, timeout: float) -> str | None:
        """Pollt die Modell-Liste bis ``timeout``. Prüft mindestens einmal."""
        attempts = max(1, math.ceil(timeout / self._poll_interval))
        for attempt in range(attempts):
            model_id = await self._find_model()
            if model_id is not None:
                return model_id
            if attempt < attempts - 1:
                await self._sleep(self._poll_interval)
        return None

    async def initialize(self) -> None:
        log.info("foundry_local_checking", alias=self._alias, host=self._host)
        model_id = await self.wait_for_model(self._initial_check)

        if model_id is None:
            args = [self._cli_path, "model", "run", self._alias, "--ttl", str(self._ttl)]
            log.info("foundry_local_loading", command=" ".join(args))
            try:
                self._launcher.launch(args)
            except OSError as exc:
                raise LLMBackendError(f"Foundry CLI konnte nicht gestartet werden: {exc}") from exc
            model_id = await self.wait_for_model(self._load_timeout)
            if model_id is None:
                raise LLMBackendError(
                    f"Failed to load model {self._alias} within {self._load_timeout:g}s. "
                    "Make sure Foundry Local is installed."
                )

        self._model_id = model_id
        log.info("foundry_local_ready", model_id=model_id)

    async def chat(self, model: str, options: ChatOptions) -> ChatResult:
        if self._model_id is None:
            raise LLMBackendError(f"Foundry Local model {self._alias} is not loaded")

        payload: dict[str, Any] = {
            "model": self._model_id,
            "messages": _payload_messages(options.messages),
            "stream": False,
        }
        if options.max_tokens is not None:
            payload["max_tokens"] = options.max_tokens
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop:
            payload["stop"] = options.stop

        async with self._lock:
            client = await self._ensure_client()
            start = time.monotonic()
            try:
                resp = await client.post("/chat/completions", json=payload)
            except httpx.TimeoutException as exc:
                raise LLMBackendError(f"Foundry Local Timeout nach {self._timeout}s") from exc
            except httpx.ConnectError as exc:
                raise LLMBackendError(f"Foundry Local nicht erreichbar: {self._host}") from exc
            duration_ms = int((time.monotonic() - start) * 1000)

        if resp.status_code != 200:
            raise LLMBackendError(
                f"Foundry Local HTTP {resp.status_code}: {resp.text[:500]}",
                status_code=resp.status_code,
            )
        data = resp.json()
        choice = (data.get("choices") or [{}])[0]
        log.debug("foundry_local_chat", model=self._model_id, duration_ms=duration_ms)
        return ChatResult(
            content=(choice.get("message") or {}).get("content") or "",
            finish_reason=choice.get("finish_reason") or "stop",
            usage=_parse_usage(data, self.get_models()[0]),
            model=data.get("model", self._model_id),
            raw=data,
        )

    def get_models(self) -> list[ModelSpec]:
        if self._model_id is None:
            return []
        return [
            ModelSpec(
                id=self._model_id,
                name=self._alias,
                reasoning=False,
                context_window=8192,
                max_tokens=2048,
                input=["text"],
                cost=ModelCost(input=0.0, output=0.0),
            )
        ]

    def get_model(self, model_id: str) -> ModelSpec | None:
        # Alias und geladene ID sind gleichwertig
        models = self.get_models()
        if models and model_id in (self._alias, self._model_id):
            return models[0]
        return None

    async def health_check(self) -> bool:
        if self._model_id is None:
            return False
        try:
            return self._model_id in await self.list_models()
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ============================================================================
# Mock-Backend
# ============================================================================


def generate_mock_response(user_message: str) -> str:
    lower = user_message.lower()
    if "list" in lower and "file" in lower:
        return "```nushell\nls | select name size modified\n```"
    if "read" in lower or "open" in lower:
        return "```nushell\nph-file read example.txt\n```"
    if "help" in lower:
        return (
            "I'm Shellgate, an assistant that uses Nushell for efficient task execution. "
            "I can manage files, query data and work with cloud resources."
        )
    return (
        f'I\'ve received your message: "{user_message[:50]}"\n\n'
        "This is a mock response for development. Configure a real provider to get actual answers."
    )


class MockLLMBackend(ProviderClient):
    """Answers without any network call.

    Args:
        models: Models this provider claims to offer.
        responder: Maps the last message to a response. Default: canned rules.
        latency_seconds: Simulated processing delay.
    """

    def __init__(
        self,
        models: list[ModelSpec] | None = None,
        *,
        responder: Callable[[str], str] | None = None,
        latency_seconds: float = 0.0,
    ) -> None:
        self._models = models or [ModelSpec(id="mock-model", name="Mock Model")]
        self._responder = responder or generate_mock_response
        self._latency = latency_seconds

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.MOCK

    async def chat(self, model: str, options: ChatOptions) -> ChatResult:
        if self._latency:
            await asyncio.sleep(self._latency)
        last = options.messages[-1].content if options.messages else ""
        content = self._responder(last)
        prompt = len(last) // 4
        completion = len(content) // 4
        return ChatResult(
            content=content,
            finish_reason="stop",
            usage=TokenUsage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=prompt + completion,
                estimated_cost=0.0,
            ),
            model=model,
        )

    def get_models(self) -> list[ModelSpec]:
        return list(self._models)

    async def health_check(self) -> bool:
        return True
