"""
Semantic candidate generator: nearest-neighbour search blended with usage.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Union

from .config import SEMANTIC
from .filters import SearchScope
from .stores import EmbeddingGateway, Neighbor, VectorStore
from .types import CandidateRecord

logger = logging.getLogger(__name__)

NEIGHBOR_MULTIPLIER = 2
USAGE_FREQUENCY_WEIGHT = 0.7
USAGE_RECENCY_WEIGHT = 0.3
# usage_count at which the frequency component saturates at 1.0
USAGE_FREQUENCY_SATURATION = 100
USAGE_RECENCY_DECAY_DAYS = 30.0

QueryInput = Union[str, Sequence[float]]


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def usage_score(
    usage_count: int,
    last_returned_at: Optional[dt.datetime],
    now: dt.datetime,
) -> float:
    """
    Frequency/recency bonus for passages returned by earlier searches.

    ``0.7 * min(1, log(count + 1) / log(100)) + 0.3 * exp(-days / 30)``;
    zero for passages never returned before.
    """
    if last_returned_at is None or usage_count <= 0:
        return 0.0
    if last_returned_at.tzinfo is None:
        last_returned_at = last_returned_at.replace(tzinfo=dt.timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=dt.timezone.utc)

    frequency = min(1.0, math.log(usage_count + 1) / math.log(USAGE_FREQUENCY_SATURATION))
    days_since = max(0.0, (now - last_returned_at).total_seconds() / 86400.0)
    recency = math.exp(-days_since / USAGE_RECENCY_DECAY_DAYS)
    return USAGE_FREQUENCY_WEIGHT * frequency + USAGE_RECENCY_WEIGHT * recency


@dataclass
class SemanticSearchOutcome:
    """Candidates plus the best similarity seen before thresholding."""

    candidates: List[CandidateRecord] = field(default_factory=list)
    highest_similarity: Optional[float] = None
    embedding_available: bool = True


class SemanticCandidateGenerator:
    """Vector similarity channel over embedded passages."""

    def __init__(
        self,
        store: VectorStore,
        gateway: Optional[EmbeddingGateway],
        *,
        clock: Callable[[], dt.datetime] = _utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.clock = clock

    async def _query_vector(self, query: QueryInput) -> Optional[List[float]]:
        if not isinstance(query, str):
            vector = [float(x) for x in query]
            return vector or None
        if not query.strip() or self.gateway is None:
            return None
        try:
            vector = await asyncio.to_thread(self.gateway.embed, query)
        except Exception as e:
            logger.warning("Embedding generation failed: %s", e)
            return None
        if vector is None or len(vector) == 0:
            return None
        return list(vector)

    def _score(self, neighbor: Neighbor, similarity: float, now: dt.datetime) -> CandidateRecord:
        bonus = usage_score(neighbor.usage_count, neighbor.last_returned_at, now)
        combined = similarity + bonus
        return CandidateRecord(
            id=neighbor.id,
            content=neighbor.text,
            channel_score=combined,
            channel_name=SEMANTIC,
            document_id=neighbor.document_id,
            extras={
                "similarity": similarity,
                "distance": neighbor.distance,
                "usage_score": bonus,
                "combined_score": combined,
                "usage_count": neighbor.usage_count,
                "chunk_index": neighbor.chunk_index,
                "embedding_model": neighbor.embedding_model,
            },
        )

    async def search(
        self,
        query: QueryInput,
        *,
        limit: int,
        threshold: float,
        scope: SearchScope,
    ) -> SemanticSearchOutcome:
        """
        Rank passages by ``similarity + usage_score``.

        Fetches ``2 * limit`` neighbours, drops those below ``threshold``
        and keeps the best ``limit``. Only the passages in the returned
        list are marked as used.
        """
        if limit <= 0:
            return SemanticSearchOutcome()
        vector = await self._query_vector(query)
        if vector is None:
            return SemanticSearchOutcome(embedding_available=False)

        neighbors = await self.store.nearest_neighbors(vector, scope, limit * NEIGHBOR_MULTIPLIER)
        now = self.clock()

        highest: Optional[float] = None
        scored: List[CandidateRecord] = []
        for neighbor in neighbors:
            similarity = 1.0 - neighbor.distance
            if highest is None or similarity > highest:
                highest = similarity
            if similarity < threshold:
                continue
            scored.append(self._score(neighbor, similarity, now))

        scored.sort(key=lambda c: c.channel_score, reverse=True)
        selected = scored[:limit]

        if selected:
            try:
                await self.store.mark_used([c.id for c in selected], now)
            except Exception as e:
                logger.warning("Failed to record passage usage: %s", e)

        logger.debug(
            "Semantic channel: %d neighbours, %d above threshold %.3f, %d returned",
            len(neighbors),
            len(scored),
            threshold,
            len(selected),
        )
        return SemanticSearchOutcome(candidates=selected, highest_similarity=highest)

    async def generate(
        self,
        query: QueryInput,
        *,
        limit: int,
        threshold: float = 0.0,
        scope: Optional[SearchScope] = None,
    ) -> List[CandidateRecord]:
        """Return semantic candidates ordered by ``channel_score`` descending."""
        outcome = await self.search(query, limit=limit, threshold=threshold, scope=scope or SearchScope())
        return outcome.candidates
