"""
Lexical candidate generator: full-text rank widened by trigram similarity,
with a plain substring match when the text-search capability is missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .config import DEFAULT_TRIGRAM_THRESHOLD, LEXICAL
from .filters import SearchScope
from .stores import TextMatch, TextSearchStore
from .types import CandidateRecord

logger = logging.getLogger(__name__)

# Added to the native full-text rank so any full-text hit outranks any
# trigram-only hit (trigram similarity never exceeds 1.0).
FULLTEXT_RANK_OFFSET = 1.0
SUBSTRING_MATCH_SCORE = 0.5

TIER_FULLTEXT = "fulltext"
TIER_TRIGRAM = "trigram"
TIER_SUBSTRING = "substring"


@dataclass
class LexicalSearchOutcome:
    candidates: List[CandidateRecord] = field(default_factory=list)
    fallback: Optional[str] = None
    error: Optional[str] = None


def _record(match: TextMatch, score: float, tier: str) -> CandidateRecord:
    return CandidateRecord(
        id=match.id,
        content=match.text,
        channel_score=score,
        channel_name=LEXICAL,
        document_id=match.document_id,
        extras={"text_rank": score, "tier": tier},
    )


class LexicalCandidateGenerator:
    """Keyword channel with a three-step fallback ladder."""

    def __init__(self, store: TextSearchStore, *, trigram_threshold: float = DEFAULT_TRIGRAM_THRESHOLD):
        self.store = store
        self.trigram_threshold = trigram_threshold

    async def _ranked(self, query: str, scope: SearchScope, limit: int) -> List[CandidateRecord]:
        fulltext = await self.store.ranked_match(query, scope, limit)
        seen = {m.id for m in fulltext}
        # Trigram hits may repeat full-text hits.
        trigram = await self.store.trigram_match(query, scope, self.trigram_threshold, limit + len(seen))

        candidates = [
            _record(m, FULLTEXT_RANK_OFFSET + max(0.0, m.score), TIER_FULLTEXT) for m in fulltext
        ]
        candidates.extend(
            _record(m, m.score, TIER_TRIGRAM) for m in trigram if m.id not in seen
        )
        candidates.sort(key=lambda c: c.channel_score, reverse=True)
        return candidates[:limit]

    async def _substring(self, query: str, scope: SearchScope, limit: int) -> List[CandidateRecord]:
        matches = await self.store.substring_match(query, scope, limit)
        return [_record(m, SUBSTRING_MATCH_SCORE, TIER_SUBSTRING) for m in matches[:limit]]

    async def search(self, query: str, *, limit: int, scope: SearchScope) -> LexicalSearchOutcome:
        if not query or not query.strip() or limit <= 0:
            return LexicalSearchOutcome()
        query = query.strip()
        try:
            return LexicalSearchOutcome(candidates=await self._ranked(query, scope, limit))
        except Exception as e:
            logger.warning("Fulltext search failed, using substring fallback: %s", e)
            candidates = await self._substring(query, scope, limit)
            return LexicalSearchOutcome(candidates=candidates, fallback=TIER_SUBSTRING, error=str(e))

    async def generate(
        self,
        query: str,
        *,
        limit: int,
        scope: Optional[SearchScope] = None,
    ) -> List[CandidateRecord]:
        """Return lexical candidates ordered by ``text_rank`` descending."""
        outcome = await self.search(query, limit=limit, scope=scope or SearchScope())
        return outcome.candidates
