from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic_core import PydanticSerializationError

from .errors import EncodingError

Role = Literal["system", "user", "assistant"]

_SAMPLING_BOUNDS: dict[str, tuple[Callable[[float], bool], str]] = {
    "temperature": (lambda v: 0.0 <= v <= 2.0, "must be within [0, 2]."),
    "top_p": (lambda v: 0.0 < v <= 1.0, "must be within (0, 1]."),
    "max_tokens": (lambda v: v > 0, "must be positive."),
    "frequency_penalty": (lambda v: -2.0 <= v <= 2.0, "must be within [-2, 2]."),
    "presence_penalty": (lambda v: -2.0 <= v <= 2.0, "must be within [-2, 2]."),
}


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class CompletionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str = Field(min_length=1)
    messages: tuple[ChatMessage, ...] = Field(min_length=1)
    stream: bool = False

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop: tuple[str, ...] | None = None

    @field_validator("temperature", "top_p", "max_tokens", "frequency_penalty", "presence_penalty")
    @classmethod
    def _validate_sampling(cls, v: float | None, info: ValidationInfo) -> float | None:
        if v is None:
            return None
        check, message = _SAMPLING_BOUNDS[info.field_name]
        if not check(v):
            raise ValueError(f"{info.field_name} {message}")
        return v

    @field_validator("stop", mode="before")
    @classmethod
    def _validate_stop(cls, v: str | Iterable[str] | None) -> tuple[str, ...] | None:
        if v is None:
            return None
        if isinstance(v, str):
            stops: tuple[str, ...] = (v,)
        elif isinstance(v, (list, tuple, set, frozenset)):
            stops = tuple(v)
        else:
            raise ValueError("stop must be a string or a list of strings.")
        if not stops:
            raise ValueError("stop needs at least one sequence.")
        if any((not isinstance(s, str) or not s) for s in stops):
            raise ValueError("stop sequences cannot be empty.")
        return stops

    def to_wire(self) -> dict[str, object]:
        return self.model_dump(mode="json", exclude_none=True)


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionChoice(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = 0
    message: ChatMessage
    finish_reason: str | None = None


class CompletionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: tuple[CompletionChoice, ...]
    usage: Usage | None = None


class ChunkDelta(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role | None = None
    content: str | None = None


class ChunkChoice(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = 0
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: str | None = None


class CompletionChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    object: str = "chat.completion.chunk"
    created: int
    model: str
    choices: tuple[ChunkChoice, ...] = ()


class ModelInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    object: str = "model"
    created: int = 0
    owned_by: str = ""


class ModelList(BaseModel):
    object: str = "list"
    data: tuple[ModelInfo, ...] = ()


def accumulate_chunks(chunks: Iterable[CompletionChunk]) -> dict[int, str]:
    """Concatenate streamed delta content per choice index."""
    out: dict[int, str] = defaultdict(str)
    for chunk in chunks:
        for choice in chunk.choices:
            if choice.delta.content:
                out[choice.index] += choice.delta.content
    return dict(out)


@dataclass(frozen=True)
class HTTPCall:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None


def _auth_headers(credential: str | None) -> dict[str, str]:
    if not credential:
        return {}
    return {"Authorization": f"Bearer {credential}"}


def build_chat_completion_call(
    request: CompletionRequest,
    *,
    base_url: str,
    credential: str | None,
) -> HTTPCall:
    try:
        body = json.dumps(request.to_wire(), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError, PydanticSerializationError) as e:
        raise EncodingError(f"Failed to encode request: {e}") from e
    headers = {"Content-Type": "application/json", **_auth_headers(credential)}
    return HTTPCall(method="POST", url=f"{base_url}/chat/completions", headers=headers, body=body)


def build_list_models_call(*, base_url: str, credential: str | None) -> HTTPCall:
    return HTTPCall(method="GET", url=f"{base_url}/models", headers=_auth_headers(credential))
