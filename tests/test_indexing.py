"""
Tests for chunk-embed-store ingestion.
"""

from __future__ import annotations

import pytest

from src.retrieval import (
    ConfigurationError,
    EmbeddingUnavailable,
    HybridSearcher,
    InMemoryStore,
    SearchRequest,
    index_text,
)

ARTICLE = (
    "Write-ahead logging records every change before it reaches the data files.\n\n"
    "Checkpoints flush dirty pages so recovery only replays recent log records.\n\n"
    "Replication ships the log to standby servers which replay it continuously."
)


class _KeywordGateway:
    """Two-dimensional vectors: (mentions log, mentions replication)."""

    model_name = "keyword"

    def __init__(self):
        self.batches: list[list[str]] = []

    def _vector(self, text: str) -> list[float]:
        lowered = text.lower()
        return [1.0 if "log" in lowered else 0.1, 1.0 if "replica" in lowered else 0.1]

    def embed(self, text):
        return self._vector(text)

    def embed_batch(self, texts):
        self.batches.append(list(texts))
        return [self._vector(t) for t in texts]


class _ShortGateway(_KeywordGateway):
    def embed_batch(self, texts):
        return [self._vector(t) for t in texts][:-1]


@pytest.fixture
def store() -> InMemoryStore:
    s = InMemoryStore()
    s.add_document(1, title="WAL internals", location="/wal.md")
    s.add_content(1, document_id=1, embedding_model="keyword")
    return s


@pytest.mark.anyio
async def test_index_text_stores_one_passage_per_chunk(store: InMemoryStore):
    gw = _KeywordGateway()

    ids = await index_text(store, gw, content_id=1, text=ARTICLE, chunk_size=90, chunk_overlap=0)

    assert len(ids) == 3
    assert len(gw.batches) == 1
    assert [store.passages[i].chunk_index for i in ids] == [0, 1, 2]
    assert store.passages[ids[2]].text.startswith("Replication")


@pytest.mark.anyio
async def test_indexed_text_is_searchable(store: InMemoryStore):
    gw = _KeywordGateway()
    await index_text(store, gw, content_id=1, text=ARTICLE, chunk_size=90, chunk_overlap=0)

    response = await HybridSearcher.from_store(store, gw).search(
        SearchRequest(query_text="replication standby", limit=1)
    )

    assert response.results[0].content.startswith("Replication")
    assert response.results[0].document_title == "WAL internals"


@pytest.mark.anyio
async def test_empty_text_indexes_nothing(store: InMemoryStore):
    gw = _KeywordGateway()
    assert await index_text(store, gw, content_id=1, text="   ") == []
    assert gw.batches == []


@pytest.mark.anyio
async def test_vector_count_mismatch_raises(store: InMemoryStore):
    with pytest.raises(EmbeddingUnavailable):
        await index_text(store, _ShortGateway(), content_id=1, text=ARTICLE, chunk_size=90, chunk_overlap=0)
    assert store.passages == {}


@pytest.mark.anyio
async def test_invalid_chunk_settings_raise(store: InMemoryStore):
    with pytest.raises(ConfigurationError):
        await index_text(store, _KeywordGateway(), content_id=1, text=ARTICLE, chunk_size=0)
