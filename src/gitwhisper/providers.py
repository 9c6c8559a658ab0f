"""LLM provider interface and Gemini implementation."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from typing import Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from gitwhisper import config
from gitwhisper.errors import (
    AuthError,
    GitWhisperError,
    ProviderEmptyResult,
    RateLimitError,
    TransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """Protocol for embedding providers."""

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts, returning a list of float vectors."""
        ...


class GenerationProvider(Protocol):
    """Protocol for text generation providers."""

    def generate(self, prompt: str, system: str | None = None) -> str:
        """Generate text from a prompt, returning the response string."""
        ...

    def generate_stream(self, prompt: str, system: str | None = None) -> Iterator[str]:
        """Generate text from a prompt, yielding incremental text chunks."""
        ...


def classify_provider_error(exc: Exception) -> GitWhisperError:
    """Map a google-genai / transport exception onto the domain taxonomy."""
    if isinstance(exc, GitWhisperError):
        return exc
    if isinstance(exc, genai_errors.APIError):
        code = getattr(exc, "code", None) or 0
        if code == 429:
            return RateLimitError(f"Provider rate limit: {exc}")
        if code in (401, 403):
            return AuthError(f"Provider rejected credentials: {exc}")
        if code == 400:
            return ValidationError(f"Provider rejected request: {exc}")
        return TransientError(f"Provider error ({code}): {exc}")
    if isinstance(exc, httpx.TimeoutException):
        return TransientError(f"Provider call timed out: {exc}")
    if isinstance(exc, httpx.TransportError):
        return TransientError(f"Provider unreachable: {exc}")
    return TransientError(f"Provider call failed: {exc}")


class GeminiProvider:
    """Gemini implementation of embedding and generation."""

    def __init__(
        self,
        api_key: str | None = None,
        embedding_model: str | None = None,
        embedding_dims: int | None = None,
        generation_model: str | None = None,
        timeout: float | None = None,
    ) -> None:
        timeout = timeout if timeout is not None else config.STAGE_TIMEOUT_SECS
        self._client = genai.Client(
            api_key=api_key or config.GEMINI_API_KEY,
            # HttpOptions.timeout is in milliseconds
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),
        )
        self._embedding_model = embedding_model or config.EMBEDDING_MODEL
        self._embedding_dims = embedding_dims or config.EMBEDDING_DIMS
        self._generation_model = generation_model or config.GEMINI_MODEL

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts using Gemini embedding API.

        Args:
            texts: List of strings to embed. Max 250 per call.

        Returns:
            List of float vectors, one per input text.
        """
        total_chars = sum(len(t) for t in texts)
        logger.debug("Embedding %d text(s) (%d chars) via %s", len(texts), total_chars, self._embedding_model)
        t0 = time.perf_counter()
        try:
            result = self._client.models.embed_content(
                model=self._embedding_model,
                contents=texts,
                config=types.EmbedContentConfig(
                    output_dimensionality=self._embedding_dims,
                ),
            )
        except Exception as e:
            raise classify_provider_error(e) from e
        logger.debug("Embed complete: %.0fms", (time.perf_counter() - t0) * 1000)
        if not result.embeddings:
            raise ProviderEmptyResult("Embedding response contained no vectors")
        return [list(e.values or []) for e in result.embeddings]

    def generate(self, prompt: str, system: str | None = None) -> str:
        """Generate text using Gemini.

        Args:
            prompt: The user prompt.
            system: Optional system instruction.

        Returns:
            The generated text response.
        """
        logger.debug("Generate via %s (%d char prompt)", self._generation_model, len(prompt))
        t0 = time.perf_counter()
        try:
            response = self._client.models.generate_content(
                model=self._generation_model,
                contents=prompt,
                config=self._gen_config(system),
            )
        except Exception as e:
            raise classify_provider_error(e) from e
        logger.debug("Generate complete: %d chars, %.0fms", len(response.text or ""), (time.perf_counter() - t0) * 1000)
        return response.text or ""

    def generate_stream(self, prompt: str, system: str | None = None) -> Iterator[str]:
        """Stream generated text chunks as Gemini produces them."""
        logger.debug("Stream via %s (%d char prompt)", self._generation_model, len(prompt))
        try:
            stream = self._client.models.generate_content_stream(
                model=self._generation_model,
                contents=prompt,
                config=self._gen_config(system),
            )
            for chunk in stream:
                if chunk.text:
                    yield chunk.text
        except Exception as e:
            raise classify_provider_error(e) from e

    @staticmethod
    def _gen_config(system: str | None) -> types.GenerateContentConfig | None:
        if not system:
            return None
        return types.GenerateContentConfig(system_instruction=system)
