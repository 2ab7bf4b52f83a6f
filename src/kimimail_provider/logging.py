from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from typing import Any, TypeAlias, cast

import structlog

REDACTED = "[REDACTED]"

_SENSITIVE_KEYS = {
    "authorization",
    "proxy-authorization",
    "x-api-key",
    "api_key",
    "apikey",
    "credential",
    "credentials",
    "fernet_key",
}

# Token counts (max_tokens, tokens_used) must stay visible, so bare "token" is not a fragment.
_SENSITIVE_FRAGMENTS = (
    "api_key",
    "access_token",
    "auth_token",
    "authorization",
    "secret",
    "password",
    "credential",
)

_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9._~+/=-]{6,})")

ProcessorReturn: TypeAlias = Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]
Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], ProcessorReturn]


def _is_sensitive_key(key: Any) -> bool:
    name = str(key).lower()
    return name in _SENSITIVE_KEYS or any(frag in name for frag in _SENSITIVE_FRAGMENTS)


def redact(value: Any, *, secrets: Iterable[str] = ()) -> Any:
    """Replace known secrets, bearer tokens and credential-like fields with a marker."""
    known = [s for s in secrets if s]
    if isinstance(value, str):
        for secret in known:
            value = value.replace(secret, REDACTED)
        return _BEARER_RE.sub(f"Bearer {REDACTED}", value)
    if isinstance(value, dict):
        return {
            k: REDACTED if _is_sensitive_key(k) else redact(v, secrets=known) for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(redact(v, secrets=known) for v in value)
    return value


def _make_redaction_processor(*, secrets: list[str]) -> Processor:
    known = [s for s in secrets if isinstance(s, str) and s]

    def _processor(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> ProcessorReturn:
        return cast(dict[str, Any], redact(dict(event_dict), secrets=known))

    return _processor


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: list[str] | None = None) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    # Redaction always runs: credential-shaped keys are masked even without known secrets.
    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
        cast(Processor, structlog.processors.TimeStamper(fmt="iso")),
        _make_redaction_processor(secrets=secrets or []),
    ]

    if fmt == "json":
        processors.append(cast(Processor, structlog.processors.JSONRenderer()))
    else:
        processors.append(cast(Processor, structlog.dev.ConsoleRenderer()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )
