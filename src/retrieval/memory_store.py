"""
In-process store implementing every retrieval store protocol.

Suitable for tests, local experiments and small corpora. Full-text ranking
uses BM25 over the passages in scope, vector search uses numpy cosine
distance, and fuzzy matching uses pg_trgm-style trigram similarity.
"""

from __future__ import annotations

import datetime as dt
import itertools
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
from rank_bm25 import BM25Okapi

from .chunker import Chunk
from .filters import SearchScope
from .stores import DocumentMetadata, Neighbor, TagMatch, TextMatch
from .tags import Tag, expand_tag_hierarchy
from .types import ContentKind, PassageId
from .utils import iter_tokens, trigram_similarity


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass
class StoredDocument:
    id: PassageId
    title: str
    location: str
    document_type: str = "text"
    keywords: Tuple[str, ...] = ()


@dataclass
class StoredContent:
    id: PassageId
    document_id: PassageId
    kind: ContentKind = ContentKind.TEXT
    embedding_model: Optional[str] = None


@dataclass
class StoredPassage:
    id: PassageId
    content_id: PassageId
    chunk_index: int
    text: str
    vector: np.ndarray
    created_at: dt.datetime
    usage_count: int = 0
    last_returned_at: Optional[dt.datetime] = None
    tags: Dict[str, Tuple[float, str]] = field(default_factory=dict)


class InMemoryStore:
    """Vector, text-search, tag and metadata store held in memory."""

    def __init__(self) -> None:
        self.documents: Dict[PassageId, StoredDocument] = {}
        self.contents: Dict[PassageId, StoredContent] = {}
        self.passages: Dict[PassageId, StoredPassage] = {}
        self.tags: Dict[str, Tag] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # -- writes ----------------------------------------------------------

    def add_document(
        self,
        document_id: PassageId,
        *,
        title: str,
        location: str,
        document_type: str = "text",
        keywords: Sequence[str] = (),
    ) -> StoredDocument:
        doc = StoredDocument(document_id, title, location, document_type, tuple(keywords))
        self.documents[document_id] = doc
        return doc

    def add_content(
        self,
        content_id: PassageId,
        *,
        document_id: PassageId,
        kind: ContentKind = ContentKind.TEXT,
        embedding_model: Optional[str] = None,
    ) -> StoredContent:
        if document_id not in self.documents:
            raise KeyError(f"Unknown document {document_id!r}")
        content = StoredContent(content_id, document_id, kind, embedding_model)
        self.contents[content_id] = content
        return content

    def add_passage(
        self,
        *,
        content_id: PassageId,
        text: str,
        vector: Sequence[float],
        chunk_index: Optional[int] = None,
        passage_id: Optional[PassageId] = None,
        created_at: Optional[dt.datetime] = None,
        usage_count: int = 0,
        last_returned_at: Optional[dt.datetime] = None,
    ) -> StoredPassage:
        if content_id not in self.contents:
            raise KeyError(f"Unknown content {content_id!r}")
        if chunk_index is None:
            chunk_index = sum(1 for p in self.passages.values() if p.content_id == content_id)
        if any(p.content_id == content_id and p.chunk_index == chunk_index for p in self.passages.values()):
            raise ValueError(f"chunk_index {chunk_index} already exists for content {content_id!r}")
        if passage_id is None:
            passage_id = next(self._ids)
            while passage_id in self.passages:
                passage_id = next(self._ids)
        passage = StoredPassage(
            id=passage_id,
            content_id=content_id,
            chunk_index=chunk_index,
            text=text,
            vector=np.asarray(vector, dtype=np.float32),
            created_at=created_at or _utcnow(),
            usage_count=usage_count,
            last_returned_at=last_returned_at,
        )
        self.passages[passage_id] = passage
        return passage

    async def add_passages(
        self,
        content_id: PassageId,
        chunks: Sequence[Chunk],
        vectors: Sequence[Sequence[float]],
    ) -> List[PassageId]:
        if len(chunks) != len(vectors):
            raise ValueError(f"{len(chunks)} chunks but {len(vectors)} vectors")
        return [
            self.add_passage(content_id=content_id, text=c.text, vector=v, chunk_index=c.index).id
            for c, v in zip(chunks, vectors)
        ]

    def tag_passage(
        self,
        passage_id: PassageId,
        names: Sequence[str],
        *,
        confidence: float = 1.0,
        source: str = "manual",
    ) -> None:
        """Attach tags (and register their ancestors in the tag forest)."""
        passage = self.passages[passage_id]
        for name in names:
            hierarchy = expand_tag_hierarchy(name)
            for tag in hierarchy:
                self.tags.setdefault(tag.name, tag)
            passage.tags[hierarchy[-1].name] = (confidence, source)

    # -- scope -----------------------------------------------------------

    def _in_scope(self, scope: SearchScope) -> List[StoredPassage]:
        admitted = []
        for passage in self.passages.values():
            content = self.contents[passage.content_id]
            doc = self.documents[content.document_id]
            if scope.admits(
                document_type=doc.document_type,
                keywords=doc.keywords,
                created_at=passage.created_at,
                content_id=content.id,
                content_kind=content.kind,
                embedding_model=content.embedding_model,
            ):
                admitted.append(passage)
        return admitted

    def _document_id(self, passage: StoredPassage) -> PassageId:
        return self.contents[passage.content_id].document_id

    # -- VectorStore -----------------------------------------------------

    async def nearest_neighbors(self, vector: Sequence[float], scope: SearchScope, k: int) -> List[Neighbor]:
        candidates = [p for p in self._in_scope(scope) if p.vector.size]
        if not candidates or k <= 0:
            return []
        query = np.asarray(vector, dtype=np.float32)
        matrix = np.vstack([p.vector for p in candidates])
        if matrix.shape[1] != query.shape[0]:
            raise ValueError(f"query has {query.shape[0]} dimensions, passages have {matrix.shape[1]}")

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0, matrix @ query / norms, 0.0)
        distances = np.clip(1.0 - sims, 0.0, 2.0)
        order = np.argsort(distances, kind="stable")[:k]

        results: List[Neighbor] = []
        for idx in order:
            p = candidates[int(idx)]
            content = self.contents[p.content_id]
            results.append(
                Neighbor(
                    id=p.id,
                    distance=float(distances[idx]),
                    text=p.text,
                    document_id=content.document_id,
                    chunk_index=p.chunk_index,
                    embedding_model=content.embedding_model,
                    usage_count=p.usage_count,
                    last_returned_at=p.last_returned_at,
                )
            )
        return results

    async def mark_used(self, ids: Sequence[PassageId], when: dt.datetime) -> None:
        with self._lock:
            for passage_id in ids:
                passage = self.passages.get(passage_id)
                if passage is None:
                    continue
                passage.usage_count += 1
                passage.last_returned_at = when

    # -- TextSearchStore -------------------------------------------------

    async def ranked_match(self, query: str, scope: SearchScope, limit: int) -> List[TextMatch]:
        query_tokens = list(iter_tokens(query))
        passages = self._in_scope(scope)
        if not query_tokens or not passages:
            return []
        tokenized = [list(iter_tokens(p.text)) for p in passages]
        if not any(tokenized):
            return []
        bm25 = BM25Okapi(tokenized)
        scores = bm25.get_scores(query_tokens)

        required: Set[str] = set(query_tokens)
        matches = [
            TextMatch(id=p.id, text=p.text, score=max(0.0, float(score)), document_id=self._document_id(p))
            for p, tokens, score in zip(passages, tokenized, scores)
            if required.issubset(tokens)
        ]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:limit]

    async def trigram_match(
        self, query: str, scope: SearchScope, threshold: float, limit: int
    ) -> List[TextMatch]:
        matches = []
        for p in self._in_scope(scope):
            similarity = trigram_similarity(p.text, query)
            if similarity >= threshold and similarity > 0:
                matches.append(TextMatch(id=p.id, text=p.text, score=similarity, document_id=self._document_id(p)))
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:limit]

    async def substring_match(self, query: str, scope: SearchScope, limit: int) -> List[TextMatch]:
        needle = query.lower()
        matches = [
            TextMatch(id=p.id, text=p.text, document_id=self._document_id(p))
            for p in self._in_scope(scope)
            if needle in p.text.lower()
        ]
        return matches[:limit]

    # -- TagStore --------------------------------------------------------

    async def subjects_with_tags(
        self, tag_names: Sequence[str], scope: SearchScope, limit: int
    ) -> List[TagMatch]:
        wanted = set(tag_names)
        matches = []
        for p in self._in_scope(scope):
            matched = tuple(sorted(wanted.intersection(p.tags)))
            if matched:
                matches.append(TagMatch(id=p.id, text=p.text, matched_tags=matched, document_id=self._document_id(p)))
        matches.sort(key=lambda m: (-len(m.matched_tags), m.id))
        return matches[:limit]

    # -- DocumentMetadataLookup ------------------------------------------

    async def fetch(self, document_id: PassageId) -> Optional[DocumentMetadata]:
        doc = self.documents.get(document_id)
        if doc is None:
            return None
        return DocumentMetadata(title=doc.title, location=doc.location)
