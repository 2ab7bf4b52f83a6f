from __future__ import annotations

import codecs
import json
import re
from collections.abc import Callable

from pydantic import ValidationError

from .errors import StreamProtocolError
from .openai_compat import CompletionChunk

DONE_SENTINEL = "[DONE]"

_EVENT_BOUNDARY = re.compile(r"\r?\n\r?\n")
_LINE_BREAK = re.compile(r"\r?\n")

MalformedEventHandler = Callable[[str, Exception], None]


def sse_encode(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


def _data_payload(line: str) -> str | None:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[len("data:") :]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


class SSEDecoder:
    """
    Incremental decoder for OpenAI-style chat completion event streams.

    Bytes may be split anywhere, including inside a UTF-8 sequence or between
    the two line breaks of an event boundary. `feed` returns the chunks of every
    event completed by the new bytes; `done` flips once `data: [DONE]` is seen,
    after which input is ignored.
    """

    def __init__(self, *, on_malformed: MalformedEventHandler | None = None):
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._on_malformed = on_malformed
        self.done = False

    def feed(self, data: bytes) -> list[CompletionChunk]:
        if self.done:
            return []
        self._buffer += self._text.decode(data)
        out: list[CompletionChunk] = []
        while not self.done:
            boundary = _EVENT_BOUNDARY.search(self._buffer)
            if boundary is None:
                break
            event = self._buffer[: boundary.start()]
            self._buffer = self._buffer[boundary.end() :]
            out.extend(self._process_event(event))
        return out

    def flush(self) -> list[CompletionChunk]:
        """Process whatever is left once the byte source is exhausted."""
        if self.done:
            return []
        self._buffer += self._text.decode(b"", final=True)
        event, self._buffer = self._buffer, ""
        out = self._process_event(event) if event.strip() else []
        self.done = True
        return out

    def _process_event(self, event: str) -> list[CompletionChunk]:
        out: list[CompletionChunk] = []
        for line in _LINE_BREAK.split(event):
            payload = _data_payload(line)
            if payload is None or not payload:
                continue
            if payload == DONE_SENTINEL:
                self.done = True
                self._buffer = ""
                break
            chunk = self._parse(payload)
            if chunk is not None:
                out.append(chunk)
        return out

    def _parse(self, payload: str) -> CompletionChunk | None:
        try:
            obj = json.loads(payload)
        except json.JSONDecodeError as e:
            self._report(payload, e)
            return None
        if isinstance(obj, dict) and "error" in obj:
            err = obj["error"]
            message = err.get("message") if isinstance(err, dict) else err
            self._report(payload, StreamProtocolError(f"Streaming error: {message or 'upstream reported an error'}"))
            return None
        try:
            return CompletionChunk.model_validate(obj)
        except ValidationError as e:
            self._report(payload, e)
            return None

    def _report(self, payload: str, error: Exception) -> None:
        if self._on_malformed is not None:
            self._on_malformed(payload, error)
