"""Embed summary text into fixed-dimension vectors via Gemini."""

from __future__ import annotations

import logging

from gitwhisper import config
from gitwhisper.errors import GitWhisperError, ProviderEmptyResult, ValidationError
from gitwhisper.providers import EmbeddingProvider, GeminiProvider

logger = logging.getLogger(__name__)


class Embedder:
    """Turns text into a vector of ``dims`` floats.

    An empty list is the failure signal: callers treat it as "not eligible
    for similarity search". ``strict=True`` re-raises provider errors so the
    embed stage can retry them; an empty provider result is never retried.
    """

    def __init__(
        self,
        provider: EmbeddingProvider | None = None,
        dims: int | None = None,
    ) -> None:
        self._provider = provider or GeminiProvider()
        self._dims = dims or config.EMBEDDING_DIMS

    @property
    def dims(self) -> int:
        return self._dims

    def embed(self, text: str, strict: bool = False) -> list[float]:
        """Embed one text. Returns [] on empty input or failure."""
        if not text or not text.strip():
            return []
        try:
            vectors = self._provider.embed([text])
            if not vectors or not vectors[0]:
                raise ProviderEmptyResult("Embedding provider returned no vector")
            vector = [float(v) for v in vectors[0]]
            if len(vector) != self._dims:
                raise ValidationError(
                    f"Embedding has {len(vector)} dimensions, expected {self._dims}"
                )
            return vector
        except ProviderEmptyResult as e:
            logger.info("%s", e)
            return []
        except GitWhisperError as e:
            if strict:
                raise
            logger.warning("Embedding failed: %s", e)
            return []
        except Exception as e:
            if strict:
                raise
            logger.warning("Embedding failed unexpectedly: %s", e)
            return []
