from __future__ import annotations

from dataclasses import dataclass, replace

import httpx
import structlog

from .client import CompletionClient
from .credential_store import SecretStore
from .errors import UnknownProviderError

log = structlog.get_logger()


@dataclass(frozen=True)
class ProviderDescriptor:
    id: str
    display_name: str
    base_url: str
    available_models: tuple[str, ...]
    supports_streaming: bool = True
    # Local runtimes accept unauthenticated calls.
    requires_credential: bool = True

    @property
    def default_model(self) -> str:
        return self.available_models[0] if self.available_models else ""

    def with_base_url(self, base_url: str | None) -> ProviderDescriptor:
        if not base_url:
            return self
        return replace(self, base_url=base_url)


BUILTIN_PROVIDERS: dict[str, ProviderDescriptor] = {
    d.id: d
    for d in (
        ProviderDescriptor(
            id="kimi",
            display_name="Kimi",
            base_url="https://api.moonshot.cn/v1",
            available_models=("kimi-k2", "kimi-k2-latest"),
        ),
        ProviderDescriptor(
            id="openai",
            display_name="OpenAI",
            base_url="https://api.openai.com/v1",
            available_models=("gpt-4o", "gpt-4o-mini"),
        ),
        ProviderDescriptor(
            id="ollama",
            display_name="Ollama (Local)",
            base_url="http://localhost:11434/v1",
            available_models=("llama3.2", "mistral", "mixtral"),
            requires_credential=False,
        ),
        ProviderDescriptor(
            id="custom",
            display_name="Custom Endpoint",
            base_url="http://localhost:8000/v1",
            available_models=("custom",),
        ),
    )
}


@dataclass(frozen=True)
class RegisteredProvider:
    descriptor: ProviderDescriptor
    client: CompletionClient


class ProviderRegistry:
    """Maps provider ids to their descriptor and a live `CompletionClient`."""

    def __init__(
        self,
        secret_store: SecretStore,
        *,
        timeout_seconds: float = 60,
        resource_timeout_seconds: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._store = secret_store
        self._timeout_seconds = timeout_seconds
        self._resource_timeout_seconds = resource_timeout_seconds
        # Shared pool when injected; otherwise each client owns its own.
        self._http_client = http_client
        self._entries: dict[str, RegisteredProvider] = {}

    def register(self, descriptor: ProviderDescriptor) -> RegisteredProvider:
        client = CompletionClient(
            self._store.get(descriptor.id),
            base_url=descriptor.base_url,
            provider_id=descriptor.id,
            requires_credential=descriptor.requires_credential,
            timeout_seconds=self._timeout_seconds,
            resource_timeout_seconds=self._resource_timeout_seconds,
            client=self._http_client,
        )
        entry = RegisteredProvider(descriptor=descriptor, client=client)
        self._entries[descriptor.id] = entry
        log.info("provider_registered", provider=descriptor.id, base_url=descriptor.base_url)
        return entry

    def unregister(self, provider_id: str) -> RegisteredProvider:
        entry = self._entries.pop(provider_id, None)
        if entry is None:
            raise UnknownProviderError(provider_id)
        log.info("provider_unregistered", provider=provider_id)
        return entry

    def get(self, provider_id: str) -> RegisteredProvider:
        try:
            return self._entries[provider_id]
        except KeyError:
            raise UnknownProviderError(provider_id) from None

    def client(self, provider_id: str) -> CompletionClient:
        return self.get(provider_id).client

    def descriptor(self, provider_id: str) -> ProviderDescriptor:
        return self.get(provider_id).descriptor

    def ids(self) -> list[str]:
        return list(self._entries)

    def set_credential(self, provider_id: str, credential: str) -> None:
        entry = self.get(provider_id)
        self._store.set(provider_id, credential)
        entry.client.update_credential(credential)

    def delete_credential(self, provider_id: str) -> None:
        entry = self.get(provider_id)
        self._store.delete(provider_id)
        entry.client.update_credential(None)

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            return
        for entry in self._entries.values():
            await entry.client.close()
