"""
Ingestion-side helper: chunk a text, embed the chunks, store the passages.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List

from .chunker import DEFAULT_CHUNK_OVERLAP, DEFAULT_CHUNK_SIZE, chunk
from .errors import EmbeddingUnavailable
from .stores import EmbeddingGateway, PassageWriter
from .types import PassageId

logger = logging.getLogger(__name__)


async def index_text(
    store: PassageWriter,
    gateway: EmbeddingGateway,
    *,
    content_id: PassageId,
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[PassageId]:
    """
    Chunk ``text`` and store one embedded passage per chunk.

    Returns the new passage ids in chunk order.

    Raises:
        ConfigurationError: Invalid chunk settings.
        EmbeddingUnavailable: The gateway returned the wrong number of vectors
            or failed outright.
    """
    chunks = chunk(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
    if not chunks:
        return []

    vectors = await asyncio.to_thread(gateway.embed_batch, [c.text for c in chunks])
    if len(vectors) != len(chunks) or any(not v for v in vectors):
        raise EmbeddingUnavailable(
            f"Expected {len(chunks)} embeddings from {gateway.model_name}, got {len(vectors)}"
        )

    ids = await store.add_passages(content_id, chunks, vectors)
    logger.info("Indexed %d passages for content %s", len(ids), content_id)
    return ids
