from __future__ import annotations

import time
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass

import httpx
import structlog

from .config import KimiMailProviderConfig
from .contracts import GenerationRequest, GenerationResult
from .credential_store import EncryptedSecretStore, InMemorySecretStore, SecretStore
from .errors import (
    AllProvidersFailedError,
    NoProviderAvailableError,
    ProviderError,
    UnknownProviderError,
)
from .logging import configure_logging
from .metrics import health_events_total, maybe_start_metrics
from .provider import CompletionProvider, GenerationDefaults
from .registry import ProviderRegistry
from .retry import RetryPolicy

log = structlog.get_logger()


@dataclass
class ProviderHealth:
    healthy: bool = True
    failure_count: int = 0
    consecutive_successes: int = 0
    average_response_seconds: float = 1.0
    unhealthy_until: float | None = None

    def record_success(self, response_seconds: float) -> None:
        alpha = 0.3
        self.healthy = True
        self.unhealthy_until = None
        self.failure_count = 0
        self.consecutive_successes += 1
        self.average_response_seconds = alpha * response_seconds + (1 - alpha) * self.average_response_seconds

    def record_failure(self, *, now: float, threshold: int, reset_seconds: float) -> bool:
        """Returns True when this failure marks the provider unhealthy."""
        self.consecutive_successes = 0
        self.failure_count += 1
        if threshold <= 0 or self.failure_count < threshold or not self.healthy:
            return False
        self.healthy = False
        self.unhealthy_until = now + reset_seconds
        return True


@dataclass(frozen=True)
class ProviderRegistration:
    provider: CompletionProvider
    priority: int = 0
    max_retries: int = 3


class ProviderManager:
    """
    Chooses a provider for each generation and fails over between providers.

    Order of preference: the active provider, the configured fallbacks, then any other
    healthy provider by descending priority. Providers that fail repeatedly are skipped
    until `health_reset_seconds` have passed.
    """

    def __init__(
        self,
        *,
        active_provider_id: str | None = None,
        fallback_provider_ids: list[str] | None = None,
        retry_policy: RetryPolicy | None = None,
        unhealthy_after_failures: int = 3,
        health_reset_seconds: float = 30.0,
        clock: Callable[[], float] | None = None,
        registry: ProviderRegistry | None = None,
    ):
        self.active_provider_id = active_provider_id
        self.fallback_provider_ids = list(fallback_provider_ids or [])
        self.retry_policy = retry_policy or RetryPolicy()
        self.registry = registry
        self._unhealthy_after_failures = unhealthy_after_failures
        self._health_reset_seconds = max(0.0, health_reset_seconds)
        self._clock: Callable[[], float] = clock or time.monotonic
        self._registrations: dict[str, ProviderRegistration] = {}
        self._health: dict[str, ProviderHealth] = {}

    async def close(self) -> None:
        if self.registry is not None:
            await self.registry.aclose()

    # Registration

    def register(self, registration: ProviderRegistration) -> None:
        pid = registration.provider.id
        self._registrations[pid] = registration
        self._health[pid] = ProviderHealth()
        log.info("provider_manager_registered", provider=pid, priority=registration.priority)

    def unregister(self, provider_id: str) -> None:
        self._registrations.pop(provider_id, None)
        self._health.pop(provider_id, None)
        log.info("provider_manager_unregistered", provider=provider_id)

    def registered_providers(self) -> list[CompletionProvider]:
        regs = sorted(self._registrations.values(), key=lambda r: r.priority, reverse=True)
        return [r.provider for r in regs]

    def get_provider(self, provider_id: str) -> CompletionProvider | None:
        reg = self._registrations.get(provider_id)
        return reg.provider if reg else None

    # Selection

    def set_active_provider(self, provider_id: str) -> None:
        if provider_id not in self._registrations:
            raise UnknownProviderError(provider_id)
        self.active_provider_id = provider_id
        log.info("provider_manager_active_changed", provider=provider_id)

    def _is_healthy(self, provider_id: str) -> bool:
        health = self._health.get(provider_id)
        if health is None or health.healthy:
            return True
        if health.unhealthy_until is not None and self._clock() >= health.unhealthy_until:
            # Half-open: let the next call probe it; one more failure re-opens.
            health.healthy = True
            health.failure_count = max(0, self._unhealthy_after_failures - 1)
            health_events_total.labels(provider=provider_id, event="reset").inc()
            return True
        return False

    def active_provider(self) -> CompletionProvider:
        active = self.active_provider_id
        if active and active in self._registrations:
            if self._is_healthy(active):
                return self._registrations[active].provider
            log.warning("provider_active_unhealthy", provider=active)

        for fallback_id in self.fallback_provider_ids:
            if fallback_id in self._registrations and self._is_healthy(fallback_id):
                log.info("provider_using_fallback", provider=fallback_id)
                return self._registrations[fallback_id].provider

        for provider in self.registered_providers():
            if self._is_healthy(provider.id):
                return provider

        raise NoProviderAvailableError()

    def resolve_providers(self, provider_id: str | None = None) -> list[CompletionProvider]:
        if provider_id is not None:
            provider = self.get_provider(provider_id)
            if provider is None:
                raise UnknownProviderError(provider_id)
            return [provider]

        ordered: list[CompletionProvider] = []
        seen: set[str] = set()

        def _add(pid: str | None) -> None:
            if pid and pid not in seen and pid in self._registrations and self._is_healthy(pid):
                seen.add(pid)
                ordered.append(self._registrations[pid].provider)

        _add(self.active_provider_id)
        for fallback_id in self.fallback_provider_ids:
            _add(fallback_id)
        for provider in self.registered_providers():
            _add(provider.id)

        if not ordered:
            raise NoProviderAvailableError()
        return ordered

    # Health

    def _record_success(self, provider_id: str, response_seconds: float) -> None:
        health = self._health.get(provider_id)
        if health is not None:
            health.record_success(response_seconds)

    def _record_failure(self, provider_id: str) -> None:
        health = self._health.get(provider_id)
        if health is None:
            return
        opened = health.record_failure(
            now=self._clock(),
            threshold=self._unhealthy_after_failures,
            reset_seconds=self._health_reset_seconds,
        )
        if opened:
            health_events_total.labels(provider=provider_id, event="unhealthy").inc()
            log.warning("provider_marked_unhealthy", provider=provider_id, failures=health.failure_count)

    def provider_health(self, provider_id: str) -> tuple[bool, float] | None:
        health = self._health.get(provider_id)
        if health is None:
            return None
        return self._is_healthy(provider_id), health.average_response_seconds

    def reset_provider_health(self, provider_id: str) -> None:
        if provider_id in self._health:
            self._health[provider_id] = ProviderHealth()

    # Generation

    async def generate(self, request: GenerationRequest, provider_id: str | None = None) -> GenerationResult:
        errors: list[Exception] = []
        for provider in self.resolve_providers(provider_id):
            registration = self._registrations[provider.id]
            start = self._clock()
            try:
                result = await self.retry_policy.run(
                    lambda p=provider: p.generate(request),
                    max_attempts=registration.max_retries,
                )
            except ProviderError as e:
                self._record_failure(provider.id)
                errors.append(e)
                log.error("provider_generate_failed", provider=provider.id, kind=e.kind, error=str(e))
                continue
            self._record_success(provider.id, self._clock() - start)
            return result
        raise AllProvidersFailedError(errors)

    async def stream(self, request: GenerationRequest, provider_id: str | None = None) -> AsyncIterator[str]:
        errors: list[Exception] = []
        for provider in self.resolve_providers(provider_id):
            start = self._clock()
            started = False
            try:
                async with aclosing(provider.stream(request)) as pieces:
                    async for piece in pieces:
                        started = True
                        yield piece
            except ProviderError as e:
                self._record_failure(provider.id)
                if started:
                    raise
                errors.append(e)
                log.error("provider_stream_failed", provider=provider.id, kind=e.kind, error=str(e))
                continue
            self._record_success(provider.id, self._clock() - start)
            return
        raise AllProvidersFailedError(errors)

    # Validation

    async def validate_configuration(self, provider_id: str) -> bool:
        provider = self.get_provider(provider_id)
        if provider is None:
            raise UnknownProviderError(provider_id)
        return await provider.validate_configuration()

    async def validate_all_configurations(self) -> dict[str, bool]:
        return {pid: await self.validate_configuration(pid) for pid in list(self._registrations)}


def create_manager(
    cfg: KimiMailProviderConfig | None = None,
    *,
    secret_store: SecretStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ProviderManager:
    cfg = cfg or KimiMailProviderConfig()
    if secret_store is None:
        if cfg.fernet_key:
            secret_store = EncryptedSecretStore(cfg.credentials_path, cfg.require_fernet_key())
        else:
            secret_store = InMemorySecretStore()

    descriptors = cfg.provider_descriptors()
    secrets = [s for s in (*(secret_store.get(d.id) for d in descriptors), cfg.fernet_key) if s]
    configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=secrets)
    maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)

    registry = ProviderRegistry(
        secret_store,
        timeout_seconds=cfg.request_timeout_seconds,
        resource_timeout_seconds=cfg.resource_timeout_seconds,
        http_client=http_client,
    )
    manager = ProviderManager(
        active_provider_id=cfg.active_provider_id,
        fallback_provider_ids=cfg.fallback_provider_ids,
        retry_policy=RetryPolicy(
            max_attempts=cfg.max_attempts,
            backoff_initial_seconds=cfg.backoff_initial_seconds,
            backoff_max_seconds=cfg.backoff_max_seconds,
        ),
        unhealthy_after_failures=cfg.unhealthy_after_failures,
        health_reset_seconds=cfg.health_reset_seconds,
        registry=registry,
    )
    for descriptor in descriptors:
        entry = registry.register(descriptor)
        is_active = descriptor.id == cfg.active_provider_id
        defaults = GenerationDefaults(
            model=cfg.default_model if is_active else None,
            temperature=cfg.default_temperature,
            max_tokens=cfg.default_max_tokens,
            enable_streaming=cfg.enable_streaming,
        )
        priority = 100 if is_active else 0
        manager.register(
            ProviderRegistration(
                provider=CompletionProvider(descriptor, entry.client, defaults=defaults),
                priority=priority,
                max_retries=cfg.max_attempts,
            )
        )
    return manager
