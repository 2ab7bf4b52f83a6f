from __future__ import annotations

import json
from collections.abc import Sequence
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, ValidationError


class ProviderError(Exception):
    """Base error for provider failures."""

    kind: ClassVar[str] = "provider_error"
    retryable: ClassVar[bool] = False

    @property
    def is_retryable(self) -> bool:
        return self.retryable


class ConfigurationError(ProviderError):
    kind = "configuration_error"


class MissingCredentialError(ConfigurationError):
    kind = "missing_credential"

    def __init__(self, message: str = "API key is missing"):
        super().__init__(message)


class InvalidEndpointError(ConfigurationError):
    kind = "invalid_endpoint"


class UnknownProviderError(ConfigurationError):
    kind = "unknown_provider"

    def __init__(self, provider_id: str):
        super().__init__(f"AI provider {provider_id!r} not found.")
        self.provider_id = provider_id


class UnsupportedFeatureError(ConfigurationError):
    """Requested feature not supported by the provider or current config."""

    kind = "unsupported_feature"


class EncodingError(ProviderError):
    kind = "encode_failure"


class UpstreamProtocolError(ProviderError):
    """Unexpected upstream response shape / contract mismatch."""

    kind = "protocol_error"


class InvalidResponseError(UpstreamProtocolError):
    kind = "invalid_response"


class DecodingError(UpstreamProtocolError):
    kind = "decode_failure"


class StreamProtocolError(UpstreamProtocolError):
    kind = "stream_protocol_error"


class UpstreamHTTPError(ProviderError):
    """Non-200 upstream status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class BadRequestError(UpstreamHTTPError):
    kind = "bad_request"

    def __init__(self, message: str = "Invalid request"):
        super().__init__(400, f"Bad request: {message}")
        self.detail = message


class AuthenticationError(UpstreamHTTPError):
    pass


class UnauthorizedError(AuthenticationError):
    kind = "unauthorized"

    def __init__(self) -> None:
        super().__init__(401, "Invalid API key")


class ForbiddenError(AuthenticationError):
    kind = "forbidden"

    def __init__(self, message: str | None = None):
        super().__init__(403, f"Access forbidden: {message or 'Unknown reason'}")
        self.detail = message


class RateLimitError(UpstreamHTTPError):
    kind = "rate_limited"
    retryable = True

    def __init__(self, retry_after_seconds: float | None = None):
        if retry_after_seconds is not None:
            message = f"Rate limit exceeded. Retry after {retry_after_seconds:g} seconds"
        else:
            message = "Rate limit exceeded"
        super().__init__(429, message)
        self.retry_after_seconds = retry_after_seconds


class ServerError(UpstreamHTTPError):
    kind = "server_error"
    retryable = True

    def __init__(self, status_code: int, message: str | None = None):
        super().__init__(status_code, f"Server error ({status_code}): {message or 'Unknown error'}")
        self.detail = message


class UnknownStatusError(UpstreamHTTPError):
    kind = "unknown"

    def __init__(self, status_code: int, message: str | None = None):
        super().__init__(status_code, f"Unknown error ({status_code}): {message or 'Unknown'}")
        self.detail = message


class TransportFailureError(ProviderError):
    """DNS, connection and timeout failures below the HTTP layer."""

    kind = "transport_failure"
    retryable = True


class NoProviderAvailableError(ProviderError):
    kind = "no_provider_available"

    def __init__(self) -> None:
        super().__init__("No AI provider is available. Please configure an AI provider in settings.")


class AllProvidersFailedError(ProviderError):
    kind = "all_providers_failed"

    def __init__(self, errors: Sequence[Exception]):
        self.errors = list(errors)
        summary = "; ".join(str(e) for e in self.errors) or "no providers attempted"
        super().__init__(f"All AI providers failed: {summary}")


class ErrorDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    type: str | None = None
    code: str | int | None = None
    retry_after: float | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


def parse_error_body(raw: bytes | str | None) -> ErrorDetail | None:
    if not raw:
        return None
    try:
        return ErrorResponse.model_validate_json(raw).error
    except (ValidationError, json.JSONDecodeError, UnicodeDecodeError):
        return None


def _header_seconds(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def classify_http_error(
    status_code: int,
    body: ErrorDetail | None,
    *,
    retry_after_header: str | None = None,
) -> ProviderError:
    """Map a non-200 status and optional error body to the provider error taxonomy."""
    message = body.message if body is not None else None
    if status_code == 400:
        return BadRequestError(message or "Invalid request")
    if status_code == 401:
        return UnauthorizedError()
    if status_code == 403:
        return ForbiddenError(message)
    if status_code == 429:
        retry_after = body.retry_after if body is not None else None
        if retry_after is None:
            retry_after = _header_seconds(retry_after_header)
        return RateLimitError(retry_after_seconds=retry_after)
    if 500 <= status_code <= 599:
        return ServerError(status_code, message)
    return UnknownStatusError(status_code, message)
