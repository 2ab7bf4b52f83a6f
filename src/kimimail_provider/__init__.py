from .client import ClientSnapshot, CompletionClient
from .config import KimiMailProviderConfig
from .contracts import GenerationRequest, GenerationResult
from .credential_store import EncryptedSecretStore, InMemorySecretStore, SecretStore
from .errors import ProviderError, classify_http_error
from .manager import ProviderManager, ProviderRegistration, create_manager
from .openai_compat import (
    ChatMessage,
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    ModelInfo,
    accumulate_chunks,
)
from .provider import CompletionProvider, GenerationDefaults
from .registry import BUILTIN_PROVIDERS, ProviderDescriptor, ProviderRegistry
from .retry import RetryPolicy
from .streaming import SSEDecoder

__all__ = [
    "BUILTIN_PROVIDERS",
    "ChatMessage",
    "ClientSnapshot",
    "CompletionChunk",
    "CompletionClient",
    "CompletionProvider",
    "CompletionRequest",
    "CompletionResponse",
    "EncryptedSecretStore",
    "GenerationDefaults",
    "GenerationRequest",
    "GenerationResult",
    "InMemorySecretStore",
    "KimiMailProviderConfig",
    "ModelInfo",
    "ProviderDescriptor",
    "ProviderError",
    "ProviderManager",
    "ProviderRegistration",
    "ProviderRegistry",
    "RetryPolicy",
    "SSEDecoder",
    "SecretStore",
    "accumulate_chunks",
    "classify_http_error",
    "create_manager",
]
