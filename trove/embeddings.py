"""
Embedding providers.

Providers are registered by name and instantiated from the ``[embedding]``
section of the store configuration. Two ship with trove:

- ``openai``: OpenAI embeddings (``text-embedding-3-small``) through the
  ``openai`` client
- ``zero``: a placeholder that returns all-zero vectors; semantic search
  degrades to arbitrary order but nothing else changes

Engine code never calls ``provider.embed`` directly; it goes through
``safe_embed``, which bounds the call with a timeout and turns any failure
into a logged ``None``.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Optional

import openai
from openai import OpenAI

from .config import DEFAULT_DIMENSION, ProviderConfig, StoreConfig
from .errors import EmbeddingError
from .protocol import EmbeddingProvider

logger = logging.getLogger(__name__)

# Roughly the 8191-token input limit of the OpenAI embedding models
MAX_EMBED_CHARS = 30_000

# Models that accept the `dimensions` request parameter
_DIMENSION_TRUNCATION_MODELS = {"text-embedding-3-small", "text-embedding-3-large"}


# -----------------------------------------------------------------------------
# Providers
# -----------------------------------------------------------------------------

class OpenAIEmbedding:
    """Embeddings from the OpenAI API, via the official client."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimension: int = DEFAULT_DIMENSION,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.model = model
        self._dimension = dimension
        self._api_key = (
            api_key
            or os.environ.get("TROVE_OPENAI_API_KEY")
            or os.environ.get("OPENAI_API_KEY")
        )
        if not self._api_key:
            raise ValueError(
                "OpenAI API key required. Set TROVE_OPENAI_API_KEY or OPENAI_API_KEY"
            )
        self.timeout = timeout
        # base_url=None lets the client use its default (or OPENAI_BASE_URL)
        self._client = OpenAI(api_key=self._api_key, base_url=base_url, timeout=timeout)
        if model not in _DIMENSION_TRUNCATION_MODELS and dimension != DEFAULT_DIMENSION:
            logger.warning(
                "Model %s does not accept a dimensions parameter; "
                "its native size must equal %d", model, dimension,
            )

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        kwargs = {"model": self.model, "input": text[:MAX_EMBED_CHARS]}
        if self.model in _DIMENSION_TRUNCATION_MODELS:
            kwargs["dimensions"] = self._dimension

        try:
            response = self._client.embeddings.create(**kwargs)
        except openai.APIStatusError as e:
            raise EmbeddingError(
                f"OpenAI embeddings failed (model={self.model}): "
                f"HTTP {e.status_code}. {e.message}"
            ) from e
        except openai.OpenAIError as e:
            raise EmbeddingError(f"OpenAI embeddings request failed: {e}") from e

        try:
            vector = response.data[0].embedding
        except (AttributeError, IndexError, TypeError) as e:
            raise EmbeddingError(f"Unexpected OpenAI embeddings response: {e}") from e

        if len(vector) != self._dimension:
            raise EmbeddingError(
                f"Embedding dimension mismatch: got {len(vector)}, "
                f"expected {self._dimension}"
            )
        return [float(v) for v in vector]


class ZeroEmbedding:
    """All-zero vectors. Used when no embedding service is configured."""

    def __init__(self, dimension: int = DEFAULT_DIMENSION):
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        return [0.0] * self._dimension


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating embedding providers.

    Example:
        registry.register_embedding("openai", OpenAIEmbedding)

        # Later, from config:
        provider = registry.create_embedding("openai", {"model": "text-embedding-3-small"})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        """Create an embedding provider instance."""
        if name not in self._embedding_providers:
            available = ", ".join(self._embedding_providers.keys()) or "none"
            raise ValueError(
                f"Unknown embedding provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return self._embedding_providers[name](**(params or {}))
        except Exception as e:
            raise RuntimeError(
                f"Failed to create embedding provider '{name}': {e}"
            ) from e

    def list_embedding_providers(self) -> list[str]:
        """List registered embedding provider names."""
        return list(self._embedding_providers.keys())


_registry = ProviderRegistry()
_registry.register_embedding("openai", OpenAIEmbedding)
_registry.register_embedding("zero", ZeroEmbedding)


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry


def create_embedding_provider(config: StoreConfig) -> EmbeddingProvider:
    """
    Instantiate the provider named in the config, at the configured dimension.

    Raises:
        ValueError: unknown provider name
        RuntimeError: the provider could not be constructed
    """
    provider_config: ProviderConfig = config.embedding
    params = dict(provider_config.params)
    params.setdefault("dimension", config.dimension)
    if provider_config.name == "openai":
        params.setdefault("timeout", config.embed_timeout)
    provider = get_registry().create_embedding(provider_config.name, params)
    if provider.dimension != config.dimension:
        raise RuntimeError(
            f"Embedding provider '{provider_config.name}' produces "
            f"{provider.dimension}-d vectors, store is configured for {config.dimension}"
        )
    return provider


# -----------------------------------------------------------------------------
# Failure-tolerant embedding
# -----------------------------------------------------------------------------

# Shared pool for timed calls. A timed-out call keeps running in the background
# (threads can't be cancelled) but its result is discarded.
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="trove-embed")


def safe_embed(
    provider: EmbeddingProvider,
    text: str,
    *,
    timeout: Optional[float] = None,
    context: str = "",
) -> Optional[list[float]]:
    """
    Embed text, returning None instead of raising.

    Any exception from the provider, a timeout, or a vector of the wrong
    size is logged as a warning and reported as None. The caller carries
    on without a vector.
    """
    label = f" for {context}" if context else ""
    try:
        if timeout is None:
            vector = provider.embed(text)
        else:
            vector = _executor.submit(provider.embed, text).result(timeout=timeout)
    except FuturesTimeoutError:
        logger.warning("Embedding timed out after %.1fs%s", timeout, label)
        return None
    except Exception as e:
        logger.warning("Embedding failed%s: %s", label, e)
        return None

    if vector is None or len(vector) != provider.dimension:
        logger.warning(
            "Embedding%s has wrong size (%s, expected %d)",
            label, None if vector is None else len(vector), provider.dimension,
        )
        return None
    return list(vector)
