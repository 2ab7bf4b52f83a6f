from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass

import structlog

from .client import CompletionClient
from .contracts import GenerationRequest, GenerationResult
from .errors import InvalidResponseError, MissingCredentialError, ProviderError, UnsupportedFeatureError
from .metrics import errors_total, request_latency_seconds, requests_total
from .openai_compat import ChatMessage, CompletionRequest
from .registry import ProviderDescriptor

log = structlog.get_logger()


@dataclass(frozen=True)
class GenerationDefaults:
    model: str | None = None
    temperature: float = 0.7
    max_tokens: int = 2048
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    enable_streaming: bool = True


class CompletionProvider:
    """Turns prompt-level generation requests into chat completion calls for one provider."""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        client: CompletionClient,
        *,
        defaults: GenerationDefaults | None = None,
    ):
        self.descriptor = descriptor
        self.client = client
        self.defaults = defaults or GenerationDefaults()

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def name(self) -> str:
        return self.descriptor.display_name

    @property
    def supports_stream(self) -> bool:
        return self.descriptor.supports_streaming and self.defaults.enable_streaming

    def build_messages(self, request: GenerationRequest) -> list[ChatMessage]:
        messages: list[ChatMessage] = []
        if request.system_prompt:
            messages.append(ChatMessage(role="system", content=request.system_prompt))
        for entry in request.context:
            messages.append(ChatMessage(role="user", content=entry))
        messages.append(ChatMessage(role="user", content=request.prompt))
        return messages

    def build_completion_request(self, request: GenerationRequest, *, stream: bool) -> CompletionRequest:
        d = self.defaults
        return CompletionRequest(
            model=request.model or d.model or self.descriptor.default_model,
            messages=self.build_messages(request),
            stream=stream,
            temperature=request.temperature if request.temperature is not None else d.temperature,
            max_tokens=request.max_tokens if request.max_tokens is not None else d.max_tokens,
            top_p=d.top_p,
            frequency_penalty=d.frequency_penalty,
            presence_penalty=d.presence_penalty,
        )

    def _record_error(self, operation: str, error: ProviderError) -> None:
        requests_total.labels(provider=self.id, operation=operation, status="error").inc()
        errors_total.labels(provider=self.id, kind=error.kind).inc()
        log.warning("provider_error", provider=self.id, operation=operation, kind=error.kind, error=str(error))

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        start = time.monotonic()
        completion_request = self.build_completion_request(request, stream=False)
        log.debug("provider_generate", provider=self.id, model=completion_request.model)
        try:
            with request_latency_seconds.labels(provider=self.id, operation="generate").time():
                response = await self.client.complete(completion_request)
            if not response.choices:
                raise InvalidResponseError("No completion was generated")
        except ProviderError as e:
            self._record_error("generate", e)
            raise

        choice = response.choices[0]
        requests_total.labels(provider=self.id, operation="generate", status="success").inc()
        return GenerationResult(
            provider_id=self.id,
            text=choice.message.content,
            model=response.model,
            tokens_used=response.usage.total_tokens if response.usage else 0,
            finish_reason=choice.finish_reason or "unknown",
            latency_seconds=time.monotonic() - start,
        )

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        if not self.supports_stream:
            raise UnsupportedFeatureError(f"Streaming is not enabled for provider {self.id!r}.")
        completion_request = self.build_completion_request(request, stream=True)
        try:
            with request_latency_seconds.labels(provider=self.id, operation="stream").time():
                async with aclosing(self.client.stream(completion_request)) as chunks:
                    async for chunk in chunks:
                        if not chunk.choices:
                            continue
                        choice = chunk.choices[0]
                        if choice.delta.content:
                            yield choice.delta.content
                        if choice.finish_reason:
                            break
        except ProviderError as e:
            self._record_error("stream", e)
            raise
        requests_total.labels(provider=self.id, operation="stream", status="success").inc()

    async def validate_configuration(self) -> bool:
        probe = GenerationRequest(prompt="Hello", temperature=0.0, max_tokens=5)
        try:
            await self.generate(probe)
        except MissingCredentialError:
            return False
        except ProviderError as e:
            log.error("provider_validation_failed", provider=self.id, error=str(e))
            return False
        return True
