"""Typed error hierarchy for embedding providers."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "EmbeddingProviderConfigurationError",
    "EmbeddingProviderDimMismatchError",
    "EmbeddingProviderError",
    "EmbeddingProviderInputTooLargeError",
    "EmbeddingProviderRateLimitError",
    "EmbeddingProviderRequestError",
    "EmbeddingProviderRetryExceededError",
    "EmbeddingProviderRetryableError",
    "EmbeddingProviderTimeoutError",
]


@dataclass(slots=True)
class EmbeddingProviderError(RuntimeError):
    """Base error raised by embedding providers."""

    message: str
    provider: str
    model: str
    request_id: str | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class EmbeddingProviderConfigurationError(EmbeddingProviderError):
    """Raised when credentials or provider settings are missing."""


@dataclass(slots=True)
class EmbeddingProviderRequestError(EmbeddingProviderError):
    """Raised for requests the provider will keep rejecting."""


@dataclass(slots=True)
class EmbeddingProviderRetryableError(EmbeddingProviderError):
    """Raised for transport or server-side errors worth retrying later."""


@dataclass(slots=True)
class EmbeddingProviderRateLimitError(EmbeddingProviderRetryableError):
    """Raised when the provider throttles requests."""


@dataclass(slots=True)
class EmbeddingProviderRetryExceededError(EmbeddingProviderRetryableError):
    """Raised when in-request retries are exhausted."""

    attempts: int = 0


@dataclass(slots=True)
class EmbeddingProviderTimeoutError(EmbeddingProviderRetryableError):
    """Raised when the caller's time budget runs out between requests."""

    attempts: int = 0


@dataclass(slots=True)
class EmbeddingProviderInputTooLargeError(EmbeddingProviderRequestError):
    """Raised when a single text exceeds the model's token limit."""

    token_count: int | None = None
    limit: int | None = None


@dataclass(slots=True)
class EmbeddingProviderDimMismatchError(EmbeddingProviderError):
    """Raised when returned vectors do not have the expected dimension."""

    expected: int | None = None
    actual: int | None = None
