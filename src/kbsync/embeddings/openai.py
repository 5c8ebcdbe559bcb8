"""OpenAI embeddings provider."""

from __future__ import annotations

import os
import random
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import httpx
import tiktoken
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    OpenAI,
    PermissionDeniedError,
    RateLimitError,
)

from kbsync.core.logging import Logger

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
)

__all__ = [
    "OpenAIEmbeddingsProvider",
    "openai_provider_factory",
]

_PROVIDER = "openai"
_DEFAULT_TIMEOUT = 30.0
_TOKEN_PAD = 8
_BACKOFF_BASE = 0.5
_BACKOFF_MULTIPLIER = 2.0
_BACKOFF_CAP = 8.0
_JITTER_RATIO = 0.2
_MAX_ATTEMPTS = 5


@dataclass(frozen=True, slots=True)
class _ModelLimits:
    dim: int
    max_batch_size: int
    max_request_tokens: int


_MODELS: Mapping[str, _ModelLimits] = {
    "text-embedding-3-small": _ModelLimits(1_536, 128, 8_191),
    "text-embedding-3-large": _ModelLimits(3_072, 64, 8_191),
    "text-embedding-ada-002": _ModelLimits(1_536, 128, 8_191),
}
_FALLBACK_LIMITS = _ModelLimits(0, 128, 8_191)


def _resolve_timeout(config: Mapping[str, object]) -> float:
    raw = os.environ.get("OPENAI_TIMEOUT_SECONDS") or config.get("timeout")
    if raw is None:
        return _DEFAULT_TIMEOUT
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError("OpenAI timeout must be a number.") from exc
    if value <= 0:
        raise ValueError("OpenAI timeout must be positive.")
    return value


class OpenAIEmbeddingsProvider(EmbeddingsProvider):
    """Embed texts via the OpenAI embeddings API.

    Requests are grouped by count and token budget. Transient failures are
    retried with capped exponential backoff and jitter before surfacing as
    :class:`EmbeddingProviderRetryExceededError`. A caller ``timeout``
    shortens each request's own timeout and stops retries that would
    outlast it.
    """

    def __init__(
        self,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
        client: OpenAI | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self._logger = logger
        self._config = dict(config or {})
        self._request_timeout = _resolve_timeout(self._config)
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._client = client or self._build_client()

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------
    def describe_model(self, model: str) -> EmbeddingProviderModel:
        name = model.strip()
        limits = _MODELS.get(name)
        return EmbeddingProviderModel(
            provider=_PROVIDER,
            name=name,
            dim=limits.dim if limits else None,
        )

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        batch_size: int,
        timeout: float | None = None,
    ) -> EmbeddingMatrix:
        if not texts:
            return ()
        stop_at = None if timeout is None else self._clock() + timeout

        name = model.strip()
        limits = _MODELS.get(name, _FALLBACK_LIMITS)
        batch_limit = max(1, min(batch_size, limits.max_batch_size))

        batches = self._batches(
            texts,
            model=name,
            limits=limits,
            batch_limit=batch_limit,
        )
        vectors: list[tuple[float, ...]] = []
        for batch in batches:
            embeddings = self._request(
                model=name,
                batch=batch,
                stop_at=stop_at,
            )
            for embedding in embeddings:
                if limits.dim and len(embedding) != limits.dim:
                    raise EmbeddingProviderDimMismatchError(
                        "Embedding dimension mismatch in OpenAI response.",
                        provider=_PROVIDER,
                        model=name,
                        expected=limits.dim,
                        actual=len(embedding),
                    )
                vectors.append(tuple(float(value) for value in embedding))
        return tuple(vectors)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _build_client(self) -> OpenAI:
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise EmbeddingProviderConfigurationError(
                "OPENAI_API_KEY must be set to use the OpenAI provider.",
                provider=_PROVIDER,
                model="*",
            )
        return OpenAI(
            api_key=api_key,
            base_url=os.environ.get("OPENAI_BASE_URL"),
            organization=os.environ.get("OPENAI_ORG_ID"),
            timeout=self._request_timeout,
        )

    def _count_tokens(self, text: str, *, model: str) -> int:
        try:
            encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            encoding = tiktoken.get_encoding("cl100k_base")
        return _TOKEN_PAD + len(encoding.encode(text))

    def _batches(
        self,
        texts: Sequence[str],
        *,
        model: str,
        limits: _ModelLimits,
        batch_limit: int,
    ) -> list[tuple[str, ...]]:
        batches: list[tuple[str, ...]] = []
        current: list[str] = []
        current_tokens = 0
        for raw in texts:
            text = raw.replace("\r\n", "\n").strip()
            tokens = self._count_tokens(text, model=model)
            if tokens > limits.max_request_tokens:
                raise EmbeddingProviderInputTooLargeError(
                    (
                        "Input text exceeds OpenAI token limit "
                        f"({tokens} > {limits.max_request_tokens})."
                    ),
                    provider=_PROVIDER,
                    model=model,
                    token_count=tokens,
                    limit=limits.max_request_tokens,
                )
            over_tokens = current_tokens + tokens > limits.max_request_tokens
            if current and (len(current) >= batch_limit or over_tokens):
                batches.append(tuple(current))
                current, current_tokens = [], 0
            current.append(text)
            current_tokens += tokens
        if current:
            batches.append(tuple(current))
        return batches

    def _request(
        self,
        *,
        model: str,
        batch: Sequence[str],
        stop_at: float | None = None,
    ) -> list[list[float]]:
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            request_timeout = self._attempt_timeout(
                stop_at,
                model=model,
                attempts=attempt - 1,
            )
            try:
                response = self._client.embeddings.create(
                    model=model,
                    input=list(batch),
                    timeout=request_timeout,
                )
            except Exception as exc:
                error = self._translate(exc, model=model)
                retryable = isinstance(error, EmbeddingProviderRetryableError)
                if not retryable:
                    raise error from exc
                if attempt >= _MAX_ATTEMPTS:
                    raise EmbeddingProviderRetryExceededError(
                        "Failed to embed texts after multiple attempts.",
                        provider=_PROVIDER,
                        model=model,
                        status_code=error.status_code,
                        request_id=error.request_id,
                        attempts=attempt,
                    ) from exc
                delay = self._backoff(attempt)
                if stop_at is not None and self._clock() + delay >= stop_at:
                    raise self._out_of_time(model, attempts=attempt) from exc
                self._logger.warning(
                    "openai-embed-retry",
                    model=model,
                    attempt=attempt,
                    max_attempts=_MAX_ATTEMPTS,
                    retry_delay=delay,
                    error_type=exc.__class__.__name__,
                    status_code=error.status_code,
                )
                self._sleep(delay)
                continue

            self._logger.debug(
                "openai-embed-request",
                model=model,
                batch_size=len(batch),
                attempts=attempt,
            )
            return [list(item.embedding) for item in response.data]

        raise AssertionError("unreachable")  # pragma: no cover

    def _attempt_timeout(
        self,
        stop_at: float | None,
        *,
        model: str,
        attempts: int,
    ) -> float:
        if stop_at is None:
            return self._request_timeout
        remaining = stop_at - self._clock()
        if remaining <= 0:
            raise self._out_of_time(model, attempts=attempts)
        return min(self._request_timeout, remaining)

    @staticmethod
    def _out_of_time(
        model: str,
        *,
        attempts: int,
    ) -> EmbeddingProviderTimeoutError:
        return EmbeddingProviderTimeoutError(
            "Embedding time budget ran out before the request finished.",
            provider=_PROVIDER,
            model=model,
            attempts=attempts,
        )

    def _backoff(self, attempt: int) -> float:
        base = min(
            _BACKOFF_BASE * (_BACKOFF_MULTIPLIER ** (attempt - 1)),
            _BACKOFF_CAP,
        )
        jitter = 1.0 + self._rng.uniform(-_JITTER_RATIO, _JITTER_RATIO)
        return round(base * jitter, 2)

    @staticmethod
    def _translate(exc: Exception, *, model: str) -> EmbeddingProviderError:
        status = getattr(exc, "status_code", None)
        if not isinstance(status, int):
            status = None
        request_id = getattr(exc, "request_id", None)
        if not isinstance(request_id, str):
            request_id = None
        message = str(exc) or exc.__class__.__name__
        context = {
            "provider": _PROVIDER,
            "model": model,
            "status_code": status,
            "request_id": request_id,
        }

        if isinstance(exc, RateLimitError):
            return EmbeddingProviderRateLimitError(message, **context)
        if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
            return EmbeddingProviderConfigurationError(message, **context)
        if isinstance(
            exc,
            (
                APITimeoutError,
                APIConnectionError,
                httpx.TimeoutException,
                httpx.NetworkError,
            ),
        ):
            return EmbeddingProviderRetryableError(message, **context)
        if isinstance(exc, APIStatusError) and status and status >= 500:
            return EmbeddingProviderRetryableError(message, **context)
        return EmbeddingProviderRequestError(message, **context)


def openai_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingsProvider:
    """Factory registered with the provider registry."""

    return OpenAIEmbeddingsProvider(
        logger=context.logger,
        config=context.config,
    )
