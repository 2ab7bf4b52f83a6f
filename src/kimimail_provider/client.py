from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx
import structlog
from pydantic import ValidationError

from .errors import (
    DecodingError,
    InvalidEndpointError,
    MissingCredentialError,
    ProviderError,
    StreamProtocolError,
    TransportFailureError,
    classify_http_error,
    parse_error_body,
)
from .metrics import errors_total, stream_chunks_total, stream_events_dropped_total
from .openai_compat import (
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    HTTPCall,
    ModelInfo,
    ModelList,
    build_chat_completion_call,
    build_list_models_call,
)
from .streaming import SSEDecoder

log = structlog.get_logger()

KIMI_API_BASE = "https://api.moonshot.cn/v1"


def normalize_base_url(base_url: str) -> str:
    try:
        url = httpx.URL(base_url.strip())
    except (httpx.InvalidURL, TypeError) as e:
        raise InvalidEndpointError(f"Invalid API URL: {base_url!r}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidEndpointError(f"Invalid API URL: {base_url!r}")
    return str(url).rstrip("/")


@dataclass(frozen=True)
class ClientSnapshot:
    """Configuration captured at the start of a call."""

    base_url: str
    credential: str | None


class CompletionClient:
    """
    Client for OpenAI-compatible chat completion endpoints (Kimi, OpenAI, Ollama, ...).

    Credential and base URL are the only mutable state; they are guarded by a lock
    and read once per call into a `ClientSnapshot`, so rotating the credential never
    affects a call that is already in flight. The client itself never retries.
    """

    def __init__(
        self,
        credential: str | None = None,
        *,
        base_url: str = KIMI_API_BASE,
        provider_id: str = "kimi",
        requires_credential: bool = True,
        timeout_seconds: float = 60,
        resource_timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.provider_id = provider_id
        self.requires_credential = requires_credential
        self._lock = threading.Lock()
        self._credential = credential
        self._base_url = normalize_base_url(base_url)
        self._resource_timeout_seconds = (
            resource_timeout_seconds if resource_timeout_seconds is not None else timeout_seconds * 2
        )
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def close(self) -> None:
        await self._client.aclose()

    def update_credential(self, credential: str | None) -> None:
        with self._lock:
            self._credential = credential
        log.info("completion_credential_updated", provider=self.provider_id, configured=bool(credential))

    def update_base_url(self, base_url: str) -> None:
        normalized = normalize_base_url(base_url)
        with self._lock:
            self._base_url = normalized

    def snapshot(self) -> ClientSnapshot:
        with self._lock:
            return ClientSnapshot(base_url=self._base_url, credential=self._credential)

    @property
    def has_credential(self) -> bool:
        return bool(self.snapshot().credential)

    def _credential_for(self, snap: ClientSnapshot) -> str | None:
        if snap.credential:
            return snap.credential
        if self.requires_credential:
            raise MissingCredentialError()
        return None

    def _prepare_chat(self, request: CompletionRequest, *, stream: bool) -> HTTPCall:
        snap = self.snapshot()
        credential = self._credential_for(snap)
        if request.stream != stream:
            request = request.model_copy(update={"stream": stream})
        return build_chat_completion_call(request, base_url=snap.base_url, credential=credential)

    async def _send(self, call: HTTPCall, *, stream: bool = False) -> httpx.Response:
        request = self._client.build_request(call.method, call.url, headers=call.headers, content=call.body)
        try:
            return await asyncio.wait_for(
                self._client.send(request, stream=stream),
                timeout=self._resource_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TransportFailureError("Upstream request exceeded the resource timeout.") from e
        except httpx.TimeoutException as e:
            raise TransportFailureError("Upstream request timed out.") from e
        except httpx.HTTPError as e:
            raise TransportFailureError(f"Network error: {e}") from e

    def _classify(self, resp: httpx.Response) -> ProviderError:
        body = parse_error_body(resp.content)
        err = classify_http_error(
            resp.status_code,
            body,
            retry_after_header=resp.headers.get("retry-after"),
        )
        errors_total.labels(provider=self.provider_id, kind=err.kind).inc()
        log.warning(
            "completion_upstream_error",
            provider=self.provider_id,
            status_code=resp.status_code,
            kind=err.kind,
            retryable=err.is_retryable,
        )
        return err

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        call = self._prepare_chat(request, stream=False)
        log.debug("completion_request_sent", provider=self.provider_id, url=call.url, model=request.model)

        resp = await self._send(call)
        if resp.status_code != 200:
            raise self._classify(resp)

        try:
            completion = CompletionResponse.model_validate_json(resp.content)
        except ValidationError as e:
            errors_total.labels(provider=self.provider_id, kind=DecodingError.kind).inc()
            raise DecodingError(f"Failed to decode response: {e.error_count()} validation error(s)") from e

        log.debug(
            "completion_response_received",
            provider=self.provider_id,
            model=completion.model,
            choices=len(completion.choices),
        )
        return completion

    def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        """
        Start a streaming completion.

        Credential and encoding failures raise here, before any I/O. The HTTP
        exchange starts when the returned iterator is first advanced; a non-200
        status raises from that first step, before any chunk is produced. Close the
        iterator (or cancel its consumer) to drop the connection early.
        """
        call = self._prepare_chat(request, stream=True)
        return self._stream_chunks(call, model=request.model)

    async def _stream_chunks(self, call: HTTPCall, *, model: str) -> AsyncIterator[CompletionChunk]:
        log.debug("completion_stream_started", provider=self.provider_id, url=call.url, model=model)
        resp = await self._send(call, stream=True)
        try:
            if resp.status_code != 200:
                try:
                    await resp.aread()
                except httpx.HTTPError as e:
                    raise TransportFailureError(f"Network error: {e}") from e
                raise self._classify(resp)

            decoder = SSEDecoder(on_malformed=self._on_malformed_event)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._resource_timeout_seconds
            delivered = 0
            try:
                async for data in resp.aiter_bytes():
                    for chunk in decoder.feed(data):
                        delivered += 1
                        stream_chunks_total.labels(provider=self.provider_id).inc()
                        yield chunk
                    if decoder.done:
                        break
                    if loop.time() > deadline:
                        raise TransportFailureError("Stream exceeded the resource timeout.")
                else:
                    for chunk in decoder.flush():
                        delivered += 1
                        stream_chunks_total.labels(provider=self.provider_id).inc()
                        yield chunk
            except httpx.TimeoutException as e:
                raise TransportFailureError("Upstream stream timed out.") from e
            except httpx.HTTPError as e:
                raise TransportFailureError(f"Network error: {e}") from e

            log.debug(
                "completion_stream_finished",
                provider=self.provider_id,
                chunks=delivered,
            )
        finally:
            await resp.aclose()

    def _on_malformed_event(self, payload: str, error: Exception) -> None:
        stream_events_dropped_total.labels(provider=self.provider_id).inc()
        log.warning(
            "stream_event_dropped",
            provider=self.provider_id,
            error=type(error).__name__,
            payload_chars=len(payload),
            detail=str(error) if isinstance(error, StreamProtocolError) else None,
        )

    async def list_models(self) -> list[ModelInfo]:
        snap = self.snapshot()
        call = build_list_models_call(base_url=snap.base_url, credential=self._credential_for(snap))

        resp = await self._send(call)
        if resp.status_code != 200:
            raise self._classify(resp)

        try:
            models = ModelList.model_validate_json(resp.content)
        except ValidationError as e:
            raise DecodingError(f"Failed to decode model list: {e.error_count()} validation error(s)") from e
        return list(models.data)
