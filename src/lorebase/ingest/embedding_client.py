"""Embedding client: batched LiteLLM embeddings.

The provider is treated as unreliable: every failure surfaces as
EmbeddingUnavailable so callers can keep lexical indexing going and retry
dense indexing on the next reconcile pass. The client holds no database
handle; callers invoke it with no write transaction open.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence

import litellm

from lorebase.config import EmbeddingCfg
from lorebase.errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)

_KEY_ENV: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
}


class EmbeddingClient:
    """Send text batches to the configured embedding model.

    Args:
        config: Embedding configuration (model, api_base, batch_size).
    """

    def __init__(self, config: EmbeddingCfg | None = None) -> None:
        self._config = config or EmbeddingCfg()

    @property
    def model(self) -> str:
        return self._config.model

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed *texts* in order, ``batch_size`` at a time.

        Raises:
            EmbeddingUnavailable: On missing credentials, any provider error,
                or a response whose length does not match the request.
        """
        if not texts:
            return []
        self._check_api_key()

        vectors: list[list[float]] = []
        size = self._config.batch_size
        for start in range(0, len(texts), size):
            batch = list(texts[start : start + size])
            vectors.extend(self._embed_batch(batch))
        return vectors

    def embed_query(self, text: str) -> list[float]:
        """Embed a single query string."""
        return self.embed([text])[0]

    # ------------------------------------------------------------------
    # Provider call
    # ------------------------------------------------------------------

    def _embed_batch(self, batch: list[str]) -> list[list[float]]:
        kwargs: dict[str, object] = {"model": self._config.model, "input": batch}
        if self._config.api_base:
            kwargs["api_base"] = self._config.api_base
        try:
            response = litellm.embedding(**kwargs)
        except Exception as exc:
            logger.warning("Embedding provider %s failed: %s", self._config.model, exc)
            raise EmbeddingUnavailable(
                f"Embedding provider '{self._config.model}' failed: {exc}"
            ) from exc

        data = response.data
        if len(data) != len(batch):
            raise EmbeddingUnavailable(
                f"Embedding provider returned {len(data)} vectors for {len(batch)} inputs"
            )
        return [list(item["embedding"]) for item in data]

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _check_api_key(self) -> None:
        """Raise EmbeddingUnavailable if a keyed provider has no API key set."""
        model = self._config.model
        provider = model.split("/")[0].lower() if "/" in model else ""
        required_env = _KEY_ENV.get(provider)
        if required_env and not os.environ.get(required_env):
            raise EmbeddingUnavailable(
                f"No API key found for provider '{provider}'. "
                f"Set the {required_env} environment variable."
            )
