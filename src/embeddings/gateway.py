"""
Embedding gateway: turns text into fixed-length vectors.

The provider is chosen once from ``EmbeddingSettings`` and resolved into a
concrete gateway; callers only see the ``EmbeddingGateway`` protocol.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from openai import OpenAI
from sentence_transformers import SentenceTransformer

from src.retrieval.errors import ConfigurationError, EmbeddingUnavailable
from src.retrieval.stores import EmbeddingGateway

logger = logging.getLogger(__name__)


class EmbeddingProvider(str, Enum):
    OPENAI = "openai"
    OLLAMA = "ollama"
    SENTENCE_TRANSFORMERS = "sentence_transformers"


DEFAULT_MODELS = {
    EmbeddingProvider.OPENAI: "text-embedding-3-small",
    EmbeddingProvider.OLLAMA: "nomic-embed-text",
    EmbeddingProvider.SENTENCE_TRANSFORMERS: "all-MiniLM-L6-v2",
}
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434/v1"
DEFAULT_BATCH_SIZE = 64


@dataclass(frozen=True)
class EmbeddingSettings:
    """Provider selection and credentials for the embedding gateway."""

    provider: EmbeddingProvider = EmbeddingProvider.SENTENCE_TRANSFORMERS
    model: Optional[str] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    batch_size: int = DEFAULT_BATCH_SIZE

    @property
    def model_name(self) -> str:
        return self.model or DEFAULT_MODELS[self.provider]

    @classmethod
    def from_env(cls) -> "EmbeddingSettings":
        raw = os.getenv("EMBEDDING_PROVIDER", EmbeddingProvider.SENTENCE_TRANSFORMERS.value)
        try:
            provider = EmbeddingProvider(raw.strip().lower())
        except ValueError as e:
            choices = ", ".join(p.value for p in EmbeddingProvider)
            raise ConfigurationError(
                f"Unknown EMBEDDING_PROVIDER {raw!r}; expected one of: {choices}"
            ) from e
        batch_size = os.getenv("EMBEDDING_BATCH_SIZE")
        return cls(
            provider=provider,
            model=os.getenv("EMBEDDING_MODEL") or None,
            base_url=os.getenv("EMBEDDING_BASE_URL") or None,
            api_key=os.getenv("EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY") or None,
            batch_size=int(batch_size) if batch_size else DEFAULT_BATCH_SIZE,
        )


class OpenAIEmbeddingGateway:
    """Embeddings from an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        model_name: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        client: Optional[OpenAI] = None,
    ):
        self.model_name = model_name
        self.batch_size = batch_size
        if client is None:
            if not api_key:
                raise ConfigurationError(
                    "API key required. Set EMBEDDING_API_KEY or OPENAI_API_KEY."
                )
            client = OpenAI(api_key=api_key, base_url=base_url)
        self.client = client

    def _request(self, texts: List[str]) -> List[List[float]]:
        response = self.client.embeddings.create(model=self.model_name, input=texts)
        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]

    def embed(self, text: str) -> Optional[List[float]]:
        if not text or not text.strip():
            return None
        try:
            vectors = self._request([text])
        except Exception as e:
            logger.error("Error calling embeddings API: %s", e)
            return None
        return vectors[0] if vectors and vectors[0] else None

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        vectors: List[List[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = list(texts[i : i + self.batch_size])
            try:
                vectors.extend(self._request(batch))
            except Exception as e:
                raise EmbeddingUnavailable(f"Embedding batch {i // self.batch_size} failed: {e}") from e
        return vectors


class SentenceTransformerGateway:
    """Local embeddings with sentence-transformers (normalised vectors)."""

    def __init__(
        self,
        model_name: str,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        model: Optional[SentenceTransformer] = None,
    ):
        self.model_name = model_name
        self.batch_size = batch_size
        self.model = model if model is not None else SentenceTransformer(model_name)

    def embed(self, text: str) -> Optional[List[float]]:
        if not text or not text.strip():
            return None
        try:
            vector = self.model.encode([text], convert_to_numpy=True, normalize_embeddings=True)[0]
        except Exception as e:
            logger.error("Error encoding query: %s", e)
            return None
        return [float(x) for x in vector]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            matrix = self.model.encode(
                list(texts),
                batch_size=self.batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
        except Exception as e:
            raise EmbeddingUnavailable(f"Embedding batch failed: {e}") from e
        return [[float(x) for x in row] for row in matrix]


def create_gateway(settings: Optional[EmbeddingSettings] = None) -> EmbeddingGateway:
    """Resolve ``settings`` into a concrete gateway."""
    if settings is None:
        settings = EmbeddingSettings.from_env()

    if settings.provider is EmbeddingProvider.SENTENCE_TRANSFORMERS:
        return SentenceTransformerGateway(settings.model_name, batch_size=settings.batch_size)
    if settings.provider is EmbeddingProvider.OLLAMA:
        # Ollama ignores the key, but the OpenAI client requires one.
        return OpenAIEmbeddingGateway(
            settings.model_name,
            api_key=settings.api_key or "ollama",
            base_url=settings.base_url or DEFAULT_OLLAMA_BASE_URL,
            batch_size=settings.batch_size,
        )
    return OpenAIEmbeddingGateway(
        settings.model_name,
        api_key=settings.api_key,
        base_url=settings.base_url,
        batch_size=settings.batch_size,
    )
