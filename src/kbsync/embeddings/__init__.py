"""Embedding collaborators: provider contract, registry, and embedder."""

from __future__ import annotations

from .embedder import Embedder, ProviderEmbedder, knowledge_item_id
from .errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderDimMismatchError,
    EmbeddingProviderError,
    EmbeddingProviderInputTooLargeError,
    EmbeddingProviderRateLimitError,
    EmbeddingProviderRequestError,
    EmbeddingProviderRetryExceededError,
    EmbeddingProviderRetryableError,
    EmbeddingProviderTimeoutError,
)
from .providers import (
    EmbeddingMatrix,
    EmbeddingProviderModel,
    EmbeddingsProvider,
    ProviderInitContext,
    ProviderNotRegisteredError,
    ProviderRegistry,
    ProviderRegistryError,
    create_default_provider_registry,
    register_builtin_providers,
)

__all__ = [
    "Embedder",
    "EmbeddingMatrix",
    "EmbeddingProviderConfigurationError",
    "EmbeddingProviderDimMismatchError",
    "EmbeddingProviderError",
    "EmbeddingProviderInputTooLargeError",
    "EmbeddingProviderModel",
    "EmbeddingProviderRateLimitError",
    "EmbeddingProviderRequestError",
    "EmbeddingProviderRetryExceededError",
    "EmbeddingProviderRetryableError",
    "EmbeddingProviderTimeoutError",
    "EmbeddingsProvider",
    "ProviderEmbedder",
    "ProviderInitContext",
    "ProviderNotRegisteredError",
    "ProviderRegistry",
    "ProviderRegistryError",
    "create_default_provider_registry",
    "knowledge_item_id",
    "register_builtin_providers",
]
