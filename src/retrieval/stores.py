"""
Collaborator interfaces consumed by the retrieval core.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence, Tuple

from .types import PassageId, TimeRange

if TYPE_CHECKING:
    from .chunker import Chunk
    from .filters import SearchScope


@dataclass(frozen=True)
class Neighbor:
    """A nearest-neighbour hit; ``distance`` is cosine distance in [0, 2]."""

    id: PassageId
    distance: float
    text: str
    document_id: Optional[PassageId] = None
    chunk_index: int = 0
    embedding_model: Optional[str] = None
    usage_count: int = 0
    last_returned_at: Optional[dt.datetime] = None


@dataclass(frozen=True)
class TextMatch:
    id: PassageId
    text: str
    score: float = 0.0
    document_id: Optional[PassageId] = None


@dataclass(frozen=True)
class TagMatch:
    id: PassageId
    text: str
    matched_tags: Tuple[str, ...]
    document_id: Optional[PassageId] = None


@dataclass(frozen=True)
class DocumentMetadata:
    title: str
    location: str


class VectorStore(Protocol):
    async def nearest_neighbors(
        self, vector: Sequence[float], scope: "SearchScope", k: int
    ) -> list[Neighbor]:
        """Return up to ``k`` passages ordered by ascending cosine distance."""
        ...

    async def mark_used(self, ids: Sequence[PassageId], when: dt.datetime) -> None:
        """Atomically bump ``usage_count`` and set ``last_returned_at`` per row."""
        ...


class TextSearchStore(Protocol):
    async def ranked_match(self, query: str, scope: "SearchScope", limit: int) -> list[TextMatch]:
        """Full-text matches; ``score`` is the store's non-negative native rank."""
        ...

    async def trigram_match(
        self, query: str, scope: "SearchScope", threshold: float, limit: int
    ) -> list[TextMatch]:
        """Passages whose trigram similarity to ``query`` is at least ``threshold``."""
        ...

    async def substring_match(self, query: str, scope: "SearchScope", limit: int) -> list[TextMatch]:
        """Case-insensitive substring matches."""
        ...


class TagStore(Protocol):
    async def subjects_with_tags(
        self, tag_names: Sequence[str], scope: "SearchScope", limit: int
    ) -> list[TagMatch]:
        """Passages carrying at least one of ``tag_names`` (exact name match)."""
        ...


class DocumentMetadataLookup(Protocol):
    async def fetch(self, document_id: PassageId) -> Optional[DocumentMetadata]:
        ...


class PassageWriter(Protocol):
    async def add_passages(
        self,
        content_id: PassageId,
        chunks: Sequence["Chunk"],
        vectors: Sequence[Sequence[float]],
    ) -> list[PassageId]:
        ...


class EmbeddingGateway(Protocol):
    """Text -> vector capability; implementations may block."""

    model_name: str

    def embed(self, text: str) -> Optional[List[float]]:
        """Vector for ``text``, or None when no vector can be produced."""
        ...

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """One vector per input text, in order."""
        ...


class TimeframeExtractor(Protocol):
    def extract(self, query: str) -> Tuple[str, Optional[TimeRange]]:
        """Return the query with its time expression removed, and the range it named."""
        ...
