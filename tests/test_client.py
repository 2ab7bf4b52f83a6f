import asyncio
import json

import httpx
import pytest

from kimimail_provider.client import CompletionClient
from kimimail_provider.errors import (
    DecodingError,
    InvalidEndpointError,
    MissingCredentialError,
    RateLimitError,
    ServerError,
    TransportFailureError,
    UnauthorizedError,
)
from kimimail_provider.openai_compat import ChatMessage, CompletionRequest
from kimimail_provider.streaming import sse_encode

BASE = "https://api.example.test/v1"


class RecordingStream(httpx.AsyncByteStream):
    """Yields the given parts one read at a time and records whether it was closed."""

    def __init__(self, parts):
        self.parts = list(parts)
        self.reads = 0
        self.closed = False

    async def __aiter__(self):
        for part in self.parts:
            self.reads += 1
            yield part

    async def aclose(self) -> None:
        self.closed = True


def _request(**kwargs):
    return CompletionRequest(model="kimi-k2", messages=[ChatMessage(role="user", content="hi")], **kwargs)


def _chunk(content, finish_reason=None):
    return json.dumps(
        {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 1,
            "model": "kimi-k2",
            "choices": [{"index": 0, "delta": {"content": content}, "finish_reason": finish_reason}],
        }
    )


def _completion(text):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1,
        "model": "kimi-k2",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
    }


def _client(handler, credential="k", **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CompletionClient(credential, base_url=BASE, client=http, **kwargs)


async def _collect(iterator):
    return [c async for c in iterator]


@pytest.mark.asyncio
async def test_complete_success_parses_response():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert str(request.url) == f"{BASE}/chat/completions"
        assert request.headers["authorization"] == "Bearer k"
        assert request.headers["content-type"] == "application/json"
        body = json.loads(request.content.decode("utf-8"))
        assert body["stream"] is False
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        return httpx.Response(200, json=_completion("hello"))

    c = _client(handler)
    try:
        out = await c.complete(_request())
        assert out.choices[0].message.content == "hello"
        assert out.choices[0].finish_reason == "stop"
        assert out.usage.total_tokens == 4
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_forces_non_streaming_body():
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(200, json=_completion("x"))

    c = _client(handler)
    try:
        await c.complete(_request(stream=True))
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_stream_across_two_reads():
    stream = RecordingStream(
        [
            sse_encode(_chunk("He")),
            sse_encode(_chunk("llo", finish_reason="stop")) + sse_encode("[DONE]"),
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=stream)

    c = _client(handler)
    try:
        chunks = await _collect(c.stream(_request()))
        assert [ch.choices[0].delta.content for ch in chunks] == ["He", "llo"]
        assert chunks[-1].choices[0].finish_reason == "stop"
        assert stream.reads == 2
        assert stream.closed
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_stream_stops_at_done_without_reading_further():
    stream = RecordingStream([sse_encode(_chunk("a")) + sse_encode("[DONE]"), sse_encode(_chunk("ignored"))])

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    c = _client(handler)
    try:
        chunks = await _collect(c.stream(_request()))
        assert [ch.choices[0].delta.content for ch in chunks] == ["a"]
        assert stream.reads == 1
        assert stream.closed
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_stream_eof_without_done_flushes_residual_event():
    stream = RecordingStream([sse_encode(_chunk("a")), b"data: " + _chunk("b").encode("utf-8")])

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    c = _client(handler)
    try:
        chunks = await _collect(c.stream(_request()))
        assert [ch.choices[0].delta.content for ch in chunks] == ["a", "b"]
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_stream_skips_malformed_event():
    stream = RecordingStream([sse_encode(_chunk("a")) + b"data: {oops\n\n" + sse_encode(_chunk("b"))])

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    c = _client(handler)
    try:
        chunks = await _collect(c.stream(_request()))
        assert [ch.choices[0].delta.content for ch in chunks] == ["a", "b"]
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_stream_non_200_raises_before_any_chunk():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "slow down", "retry_after": 5}})

    c = _client(handler)
    received = []
    try:
        with pytest.raises(RateLimitError) as exc:
            async for chunk in c.stream(_request()):
                received.append(chunk)
        assert exc.value.retry_after_seconds == 5
        assert exc.value.is_retryable
        assert received == []
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_401_raises_unauthorized():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    c = _client(handler)
    try:
        with pytest.raises(UnauthorizedError) as exc:
            await c.complete(_request())
        assert not exc.value.is_retryable
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_500_with_html_body_raises_server_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>bad gateway</html>")

    c = _client(handler)
    try:
        with pytest.raises(ServerError) as exc:
            await c.complete(_request())
        assert exc.value.status_code == 502
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_missing_credential_fails_without_network():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, json=_completion("x"))

    c = _client(handler, credential=None)
    try:
        with pytest.raises(MissingCredentialError):
            await c.complete(_request())
        with pytest.raises(MissingCredentialError):
            c.stream(_request())
        with pytest.raises(MissingCredentialError):
            await c.list_models()
        assert calls["n"] == 0
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_empty_credential_counts_as_missing():
    c = _client(lambda _: httpx.Response(200), credential="")
    try:
        assert not c.has_credential
        with pytest.raises(MissingCredentialError):
            await c.complete(_request())
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_local_provider_sends_no_authorization_header():
    def handler(request: httpx.Request) -> httpx.Response:
        assert "authorization" not in request.headers
        return httpx.Response(200, json=_completion("local"))

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    c = CompletionClient(
        None,
        base_url="http://localhost:11434/v1",
        provider_id="ollama",
        requires_credential=False,
        client=http,
    )
    try:
        out = await c.complete(_request())
        assert out.choices[0].message.content == "local"
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_connect_error_becomes_transport_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    c = _client(handler)
    try:
        with pytest.raises(TransportFailureError) as exc:
            await c.complete(_request())
        assert exc.value.is_retryable
        with pytest.raises(TransportFailureError):
            await _collect(c.stream(_request()))
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_resource_timeout_becomes_transport_failure():
    async def handler(_: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json=_completion("late"))

    c = _client(handler, resource_timeout_seconds=0.01)
    try:
        with pytest.raises(TransportFailureError):
            await c.complete(_request())
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_unexpected_body_raises_decoding_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    c = _client(handler)
    try:
        with pytest.raises(DecodingError):
            await c.complete(_request())
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_credential_rotation_does_not_affect_started_stream():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["authorization"])
        if json.loads(request.content)["stream"]:
            return httpx.Response(200, stream=RecordingStream([sse_encode(_chunk("x")) + sse_encode("[DONE]")]))
        return httpx.Response(200, json=_completion("y"))

    c = _client(handler, credential="old")
    try:
        pending = c.stream(_request())
        c.update_credential("new")
        await _collect(pending)
        await c.complete(_request())
        assert seen == ["Bearer old", "Bearer new"]
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_closing_stream_early_releases_response():
    stream = RecordingStream([sse_encode(_chunk(str(i))) for i in range(10)])

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    c = _client(handler)
    try:
        chunks = c.stream(_request())
        first = await chunks.__anext__()
        assert first.choices[0].delta.content == "0"
        await chunks.aclose()
        assert stream.closed
        assert stream.reads == 1
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_list_models():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert str(request.url) == f"{BASE}/models"
        return httpx.Response(
            200,
            json={
                "object": "list",
                "data": [
                    {"id": "kimi-k2", "object": "model", "created": 0, "owned_by": "moonshot"},
                    {"id": "kimi-k2-latest", "object": "model", "created": 0, "owned_by": "moonshot"},
                ],
            },
        )

    c = _client(handler)
    try:
        models = await c.list_models()
        assert [m.id for m in models] == ["kimi-k2", "kimi-k2-latest"]
    finally:
        await c.close()


def test_base_url_is_normalized_and_validated():
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda _: httpx.Response(200)))
    c = CompletionClient("k", base_url=f"{BASE}/", client=http)
    assert c.snapshot().base_url == BASE
    with pytest.raises(InvalidEndpointError):
        CompletionClient("k", base_url="ftp://example.test", client=http)
    with pytest.raises(InvalidEndpointError):
        c.update_base_url("not a url")
    assert c.snapshot().base_url == BASE


class PacedStream(RecordingStream):
    """Waits `delay` seconds before every part after the first; optionally never finishes."""

    def __init__(self, parts, *, delay=0.0, hang=False):
        super().__init__(parts)
        self.delay = delay
        self.hang = hang

    async def __aiter__(self):
        for i, part in enumerate(self.parts):
            if i and self.delay:
                await asyncio.sleep(self.delay)
            self.reads += 1
            yield part
        if self.hang:
            await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_stream_deadline_becomes_transport_failure():
    stream = PacedStream([sse_encode(_chunk("a")), sse_encode(_chunk("b")), sse_encode(_chunk("c"))], delay=0.05)

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    c = _client(handler, resource_timeout_seconds=0.02)
    received = []
    try:
        with pytest.raises(TransportFailureError):
            async for chunk in c.stream(_request()):
                received.append(chunk.choices[0].delta.content)
        assert received == ["a", "b"]
        assert stream.reads == 2
        assert stream.closed
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_cancelling_consumer_closes_stream():
    stream = PacedStream([sse_encode(_chunk("a"))], hang=True)
    first = asyncio.Event()
    received = []

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    c = _client(handler)

    async def consume():
        async for chunk in c.stream(_request()):
            received.append(chunk.choices[0].delta.content)
            first.set()

    try:
        task = asyncio.create_task(consume())
        await asyncio.wait_for(first.wait(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert received == ["a"]
        assert stream.closed
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_credential_rotation_mid_stream_keeps_old_credential():
    seen = []
    stream = RecordingStream(
        [sse_encode(_chunk("x")), sse_encode(_chunk("y", finish_reason="stop")) + sse_encode("[DONE]")]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["authorization"])
        if json.loads(request.content)["stream"]:
            return httpx.Response(200, stream=stream)
        return httpx.Response(200, json=_completion("z"))

    c = _client(handler, credential="old")
    try:
        chunks = c.stream(_request())
        first = await chunks.__anext__()
        assert first.choices[0].delta.content == "x"

        c.update_credential("new")
        assert c.snapshot().credential == "new"
        rest = await _collect(chunks)
        assert [ch.choices[0].delta.content for ch in rest] == ["y"]
        assert seen == ["Bearer old"]

        await c.complete(_request())
        assert seen == ["Bearer old", "Bearer new"]
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_stream_skips_in_band_error_event():
    stream = RecordingStream(
        [sse_encode(_chunk("a")) + sse_encode('{"error": {"message": "overloaded"}}') + sse_encode(_chunk("b"))]
    )

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    c = _client(handler)
    try:
        chunks = await _collect(c.stream(_request()))
        assert [ch.choices[0].delta.content for ch in chunks] == ["a", "b"]
    finally:
        await c.close()
