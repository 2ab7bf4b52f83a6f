from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    system_prompt: str | None = None
    # Earlier thread messages, oldest first; each is sent as a user turn.
    context: tuple[str, ...] = ()
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(frozen=True)
class GenerationResult:
    provider_id: str
    text: str
    model: str
    tokens_used: int
    finish_reason: str
    latency_seconds: float
