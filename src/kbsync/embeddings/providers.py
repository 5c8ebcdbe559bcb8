"""Embedding provider contract and the registry the CLI builds from."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Mapping, Protocol, Sequence, runtime_checkable

from kbsync.core.logging import Logger

__all__ = [
    "EmbeddingMatrix",
    "EmbeddingProviderModel",
    "EmbeddingsProvider",
    "ProviderFactory",
    "ProviderInitContext",
    "ProviderNotRegisteredError",
    "ProviderRegistry",
    "ProviderRegistryError",
    "create_default_provider_registry",
    "register_builtin_providers",
]

# One row per embedded text, in input order.
EmbeddingMatrix = tuple[tuple[float, ...], ...]


def _require_text(value: str, *, label: str, lower: bool = False) -> str:
    text = value.strip()
    if not text:
        raise ValueError(f"{label} cannot be empty")
    return text.lower() if lower else text


@dataclass(frozen=True, slots=True)
class EmbeddingProviderModel:
    """What a provider reports about one embedding model.

    ``dim`` is ``None`` when the provider cannot tell ahead of a request;
    the embedder then trusts the configured store dimension.
    """

    provider: str
    name: str
    dim: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "provider",
            _require_text(self.provider, label="provider", lower=True),
        )
        object.__setattr__(
            self,
            "name",
            _require_text(self.name, label="model name"),
        )
        if self.dim is not None and self.dim < 1:
            raise ValueError(f"dim must be >= 1 (got {self.dim})")

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.name}"


@runtime_checkable
class EmbeddingsProvider(Protocol):
    """Turns knowledge item text into vectors."""

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        """Return what is known about ``model`` without calling out."""

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        batch_size: int,
        timeout: float | None = None,
    ) -> EmbeddingMatrix:
        """Embed ``texts`` in order, sending at most ``batch_size`` per call.

        ``timeout`` caps the seconds spent across every request and retry.

        Raises:
            EmbeddingProviderError: Or a subclass describing the failure.
        """


@dataclass(frozen=True, slots=True)
class ProviderInitContext:
    """Arguments handed to a provider factory.

    ``config`` carries the ``[embeddings]`` options the provider cares
    about (a request timeout today) and is frozen on construction.
    """

    logger: Logger
    config: Mapping[str, object] | None = None

    def __post_init__(self) -> None:
        frozen = MappingProxyType(dict(self.config or {}))
        object.__setattr__(self, "config", frozen)


ProviderFactory = Callable[[ProviderInitContext], EmbeddingsProvider]


class ProviderRegistryError(RuntimeError):
    """Raised when the provider registry is used incorrectly."""


class ProviderNotRegisteredError(ProviderRegistryError):
    """Raised when ``[embeddings] provider`` names an unknown provider."""


class ProviderRegistry:
    """Provider factories keyed by case-insensitive name.

    Tests and embedding hosts pass their own registry to the CLI through the
    Typer context object; otherwise :func:`create_default_provider_registry`
    is used.
    """

    def __init__(
        self,
        factories: Mapping[str, ProviderFactory] | None = None,
    ) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        for key, factory in (factories or {}).items():
            self.register(key, factory)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return key.strip().lower() in self._factories

    def register(self, key: str, factory: ProviderFactory) -> None:
        """Register ``factory`` under ``key``; errors if already present."""

        name = _require_text(key, label="provider key", lower=True)
        if name in self._factories:
            raise ProviderRegistryError(
                f"Embedding provider {name!r} is already registered",
            )
        self._factories[name] = factory

    def create(
        self,
        key: str,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
    ) -> EmbeddingsProvider:
        """Build the provider registered under ``key``.

        Raises:
            ProviderNotRegisteredError: If nothing is registered for ``key``.
        """

        name = _require_text(key, label="provider key", lower=True)
        try:
            factory = self._factories[name]
        except KeyError:
            known = ", ".join(sorted(self._factories)) or "none"
            raise ProviderNotRegisteredError(
                f"Unknown embedding provider {name!r} (registered: {known})",
            ) from None
        return factory(ProviderInitContext(logger=logger, config=config))

    def snapshot(self) -> Mapping[str, ProviderFactory]:
        """Return a read-only copy of the registered factories."""

        return MappingProxyType(dict(self._factories))


def _openai_factory(context: ProviderInitContext) -> EmbeddingsProvider:
    # Deferred so the openai and tiktoken imports only happen when used.
    from .openai import openai_provider_factory

    return openai_provider_factory(context)


_BUILTIN_FACTORIES: Mapping[str, ProviderFactory] = {
    "openai": _openai_factory,
}


def register_builtin_providers(
    registry: ProviderRegistry,
) -> ProviderRegistry:
    """Add the bundled providers that ``registry`` does not define yet."""

    for key, factory in _BUILTIN_FACTORIES.items():
        if key not in registry:
            registry.register(key, factory)
    return registry


def create_default_provider_registry() -> ProviderRegistry:
    """Return a registry holding only the bundled providers."""

    return register_builtin_providers(ProviderRegistry())
