from __future__ import annotations

import os

from pydantic import BaseModel, Field

from .registry import BUILTIN_PROVIDERS, ProviderDescriptor


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _optional_float(name: str) -> float | None:
    value = os.getenv(name)
    return float(value) if value else None


class KimiMailProviderConfig(BaseModel):
    # Provider selection
    active_provider_id: str = Field(default_factory=lambda: os.getenv("AI_ACTIVE_PROVIDER", "kimi"))
    fallback_provider_ids: list[str] = Field(
        default_factory=lambda: _parse_csv(os.getenv("AI_FALLBACK_PROVIDERS"))
    )

    # Endpoints
    kimi_base_url: str | None = Field(default_factory=lambda: os.getenv("KIMI_BASE_URL"))
    openai_base_url: str | None = Field(default_factory=lambda: os.getenv("OPENAI_BASE_URL"))
    ollama_base_url: str | None = Field(default_factory=lambda: os.getenv("OLLAMA_BASE_URL"))
    custom_base_url: str | None = Field(default_factory=lambda: os.getenv("CUSTOM_BASE_URL"))

    # Generation defaults
    default_model: str | None = Field(default_factory=lambda: os.getenv("AI_DEFAULT_MODEL"))
    default_temperature: float = Field(
        default_factory=lambda: float(os.getenv("AI_DEFAULT_TEMPERATURE", "0.7"))
    )
    default_max_tokens: int = Field(default_factory=lambda: int(os.getenv("AI_DEFAULT_MAX_TOKENS", "2048")))
    enable_streaming: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_STREAMING", "true").lower() == "true"
    )

    # HTTP behavior
    request_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT_SECONDS", "60"))
    )
    resource_timeout_seconds: float | None = Field(
        default_factory=lambda: _optional_float("RESOURCE_TIMEOUT_SECONDS")
    )

    # Retry and health
    max_attempts: int = Field(default_factory=lambda: int(os.getenv("UPSTREAM_MAX_ATTEMPTS", "3")))
    backoff_initial_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_INITIAL_SECONDS", "1.0"))
    )
    backoff_max_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_MAX_SECONDS", "8.0"))
    )
    unhealthy_after_failures: int = Field(
        default_factory=lambda: int(os.getenv("PROVIDER_UNHEALTHY_AFTER_FAILURES", "3"))
    )
    health_reset_seconds: float = Field(
        default_factory=lambda: float(os.getenv("PROVIDER_HEALTH_RESET_SECONDS", "30"))
    )

    # Credential storage
    credentials_path: str = Field(default_factory=lambda: os.getenv("CREDENTIALS_PATH", "credentials.enc"))
    fernet_key: str | None = Field(default_factory=lambda: os.getenv("CREDENTIALS_FERNET_KEY"))

    # Observability
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))
    enable_metrics: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_METRICS", "false").lower() == "true"
    )
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))

    def provider_descriptors(self) -> list[ProviderDescriptor]:
        overrides = {
            "kimi": self.kimi_base_url,
            "openai": self.openai_base_url,
            "ollama": self.ollama_base_url,
            "custom": self.custom_base_url,
        }
        return [d.with_base_url(overrides.get(pid)) for pid, d in BUILTIN_PROVIDERS.items()]

    def require_fernet_key(self) -> str:
        if not self.fernet_key:
            raise ValueError("CREDENTIALS_FERNET_KEY is required for encrypted credential storage.")
        return self.fernet_key
