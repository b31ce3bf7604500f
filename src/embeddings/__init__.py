"""
Embedding gateway module (OpenAI-compatible APIs, Ollama, sentence-transformers).
"""

from .gateway import (
    EmbeddingGateway,
    EmbeddingProvider,
    EmbeddingSettings,
    OpenAIEmbeddingGateway,
    SentenceTransformerGateway,
    create_gateway,
)

__all__ = [
    "EmbeddingGateway",
    "EmbeddingProvider",
    "EmbeddingSettings",
    "OpenAIEmbeddingGateway",
    "SentenceTransformerGateway",
    "create_gateway",
]
