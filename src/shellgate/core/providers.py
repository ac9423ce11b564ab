"""Provider Registry: routes chat requests to model backends by name.

Models are addressed as ``"provider/model"``. Every call runs through the
provider's own long-lived circuit breaker (``llm:<provider>``); a failing
provider therefore never affects the breakers of the others.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from shellgate.config import (
    AzureOpenAIProviderConfig,
    FoundryLocalProviderConfig,
    MockProviderConfig,
)
from shellgate.core.circuit_breaker import BreakerRegistry, CircuitBreakerOptions
from shellgate.core.errors import ConfigError, ProviderError, UnknownProviderError
from shellgate.core.llm_backend import (
    AzureOpenAIBackend,
    ChatOptions,
    ChatResult,
    FoundryLocalBackend,
    LLMBackendError,
    MockLLMBackend,
    ProviderClient,
)
from shellgate.security.audit import AuditEvent, AuditKind, AuditSink
from shellgate.security.secrets import EnvSecretResolver, ManagedIdentityTokenProvider
from shellgate.utils.logging import get_logger

if TYPE_CHECKING:
    from shellgate.config import ProviderConfig, ShellgateConfig
    from shellgate.security.secrets import SecretResolver

log = get_logger(__name__)

HEALTH_CHECK_TIMEOUT_SECONDS = 10.0

ClientFactory = Callable[[str, "ProviderConfig", "SecretResolver"], Awaitable[ProviderClient]]


def parse_model_path(path: str) -> tuple[str, str]:
    """``"provider/model"`` → ``("provider", "model")``.

    The model part may itself contain slashes.
    """
    provider, _, model = path.partition("/")
    if not provider or not model:
        raise ConfigError(
            f"Invalid model path {path!r}, expected 'provider/model'",
            details={"path": path},
        )
    return provider, model


def breaker_name(provider: str) -> str:
    return f"llm:{provider}"


class ProviderRegistry:
    """Holds initialized provider clients and the primary model.

    Args:
        clients: Initialized clients by provider name.
        primary_model: ``"provider/model"`` used by :meth:`chat`.
        breakers: Breaker registry; one breaker per provider is taken from it.
        audit: Optional sink for per-call records.

    Raises:
        ConfigError: The primary provider is not among ``clients``.
    """

    def __init__(
        self,
        clients: dict[str, ProviderClient],
        primary_model: str,
        *,
        breakers: BreakerRegistry | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        primary_provider, _ = parse_model_path(primary_model)
        if primary_provider not in clients:
            raise ConfigError(
                f"Primary provider {primary_provider} not found. "
                f"Available: {', '.join(clients) or '(none)'}",
                details={"primary_model": primary_model},
            )
        self._clients = dict(clients)
        self._primary_model = primary_model
        self._breakers = breakers or BreakerRegistry()
        self._audit = audit
        # Breaker sofort anlegen, damit der Status alle Provider zeigt
        for name in self._clients:
            self._breakers.get(breaker_name(name))

    @property
    def primary_model(self) -> str:
        return self._primary_model

    @property
    def breakers(self) -> BreakerRegistry:
        return self._breakers

    def get_provider(self, name: str) -> ProviderClient | None:
        return self._clients.get(name)

    def get_primary_client(self) -> ProviderClient:
        return self._clients[parse_model_path(self._primary_model)[0]]

    def list_providers(self) -> list[str]:
        return list(self._clients)

    async def chat(self, options: ChatOptions) -> ChatResult:
        """Chat mit dem primären Modell."""
        return await self.chat_with_model(self._primary_model, options)

    async def chat_with_model(self, model_path: str, options: ChatOptions) -> ChatResult:
        """Chat with an explicit ``"provider/model"``.

        Raises:
            UnknownProviderError: Provider is not registered.
            CircuitOpenError: The provider's breaker rejects calls.
            CircuitTimeoutError: The call exceeded the breaker timeout.
            ProviderError: The backend failed.
        """
        provider, model = parse_model_path(model_path)
        client = self._clients.get(provider)
        if client is None:
            raise UnknownProviderError(
                f"Provider {provider} not found",
                details={"provider": provider, "available": self.list_providers()},
            )

        breaker = self._breakers.get(breaker_name(provider))
        start = time.monotonic()
        try:
            result = await breaker.execute(lambda: client.chat(model, options))
        except ProviderError as exc:
            self._record(model_path, start, success=False, error=exc.message)
            raise
        except LLMBackendError as exc:
            self._record(model_path, start, success=False, error=str(exc))
            raise ProviderError(
                f"Provider {provider} failed: {exc}",
                details={"provider": provider, "status_code": exc.status_code},
                retry_after=breaker.retry_after() or None,
            ) from exc
        except Exception as exc:
            # Transportfehler, kaputtes JSON o.ä. aus dem Backend
            log.warning(
                "provider_call_error", provider=provider, error_type=type(exc).__name__
            )
            self._record(model_path, start, success=False, error=f"{type(exc).__name__}: {exc}")
            raise ProviderError(
                f"Provider {provider} failed: {type(exc).__name__}",
                details={"provider": provider, "error_type": type(exc).__name__},
                retry_after=breaker.retry_after() or None,
            ) from exc

        self._record(
            model_path,
            start,
            success=True,
            prompt_tokens=result.usage.prompt_tokens,
            completion_tokens=result.usage.completion_tokens,
        )
        return result

    def _record(
        self,
        target: str,
        start: float,
        *,
        success: bool,
        error: str | None = None,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
    ) -> None:
        if self._audit is None:
            return
        self._audit.record(
            AuditEvent(
                kind=AuditKind.PROVIDER_CALL,
                target=target,
                success=success,
                duration_ms=int((time.monotonic() - start) * 1000),
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                error=error,
            )
        )

    async def health_check(self) -> dict[str, bool]:
        """Probes every provider concurrently. Slow or broken providers report False."""

        async def probe(name: str, client: ProviderClient) -> bool:
            try:
                return await asyncio.wait_for(
                    client.health_check(), timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                log.warning("provider_health_failed", provider=name, error=str(exc))
                return False

        names = list(self._clients)
        results = await asyncio.gather(*(probe(n, self._clients[n]) for n in names))
        return dict(zip(names, results, strict=True))

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()


# ============================================================================
# Factory
# ============================================================================


async def create_provider_client(
    name: str,
    config: ProviderConfig,
    secrets: SecretResolver,
) -> ProviderClient:
    """Erstellt und initialisiert einen Provider-Client."""
    match config:
        case MockProviderConfig():
            return MockLLMBackend(config.models, latency_seconds=config.latency_seconds)

        case AzureOpenAIProviderConfig():
            token_provider = None
            api_key = config.api_key
            if config.use_managed_identity:
                token_provider = ManagedIdentityTokenProvider()
            elif not api_key and config.api_key_secret:
                api_key = await secrets.resolve(config.api_key_secret) or ""
            return AzureOpenAIBackend(
                config.endpoint,
                config.models,
                api_key=api_key,
                token_provider=token_provider,
                api_version=config.api_version,
                timeout=config.timeout_seconds,
            )

        case FoundryLocalProviderConfig():
            client = FoundryLocalBackend(
                config.model_alias,
                ttl=config.model_ttl,
                host=config.host,
                cli_path=config.cli_path,
                initial_check_seconds=config.initial_check_seconds,
                load_timeout_seconds=config.load_timeout_seconds,
                poll_interval_seconds=config.poll_interval_seconds,
                timeout=config.timeout_seconds,
            )
            await client.initialize()
            return client

        case _:
            raise ConfigError(f"Unknown provider type for {name}: {type(config).__name__}")


async def create_provider_registry(
    config: ShellgateConfig,
    *,
    secrets: SecretResolver | None = None,
    breakers: BreakerRegistry | None = None,
    audit: AuditSink | None = None,
    factory: ClientFactory = create_provider_client,
) -> ProviderRegistry:
    """Initializes every configured provider independently.

    A provider that fails to initialize is logged and left out. Only a
    missing primary provider is fatal.
    """
    secrets = secrets or EnvSecretResolver()
    if breakers is None:
        breakers = BreakerRegistry(CircuitBreakerOptions.from_config(config.breaker))

    clients: dict[str, ProviderClient] = {}
    for name, provider_config in config.providers.items():
        try:
            clients[name] = await factory(name, provider_config, secrets)
            log.info("provider_initialized", provider=name, type=provider_config.type)
        except Exception as exc:
            log.error("provider_init_failed", provider=name, error=str(exc))

    return ProviderRegistry(
        clients,
        config.agent.primary_model,
        breakers=breakers,
        audit=audit,
    )
