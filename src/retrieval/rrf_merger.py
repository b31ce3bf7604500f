"""
Reciprocal Rank Fusion (RRF) for combining results from multiple channels.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence

from .config import DEFAULT_RRF_K
from .types import CandidateRecord, FusedResult, PassageId

# Decimal places kept when comparing fused scores; closer scores tie.
TIE_PRECISION = 12


def rrf_contribution(rank: int, *, k: int = DEFAULT_RRF_K, weight: float = 1.0) -> float:
    """``weight / (k + rank)`` for a 1-based rank."""
    return weight / (k + rank)


def rrf_merge(
    channel_results: Mapping[str, Sequence[CandidateRecord]],
    k: int = DEFAULT_RRF_K,
    weights: Optional[Mapping[str, float]] = None,
    limit: Optional[int] = None,
) -> List[FusedResult]:
    """
    Merge per-channel ranked lists using Reciprocal Rank Fusion.

    Args:
        channel_results: Channel name -> candidates, best first.
        k: Constant in ``weight / (k + rank)``, typically 60.
        weights: Per-channel multipliers; missing channels weigh 1.0.
        limit: Number of fused results to keep (all when None).

    Returns:
        Fused results sorted by RRF score descending, ties by ascending id.
    """
    weights = weights or {}
    merged: Dict[PassageId, FusedResult] = {}

    for channel, results in channel_results.items():
        weight = weights.get(channel, 1.0)
        seen_in_channel = set()
        rank = 0
        for candidate in results:
            # Repeats keep their first position and take no rank.
            if candidate.id in seen_in_channel:
                continue
            seen_in_channel.add(candidate.id)
            rank += 1

            entry = merged.get(candidate.id)
            if entry is None:
                entry = FusedResult(
                    id=candidate.id,
                    content=candidate.content,
                    rrf_score=0.0,
                    document_id=candidate.document_id,
                )
                merged[candidate.id] = entry
            elif entry.document_id is None:
                entry.document_id = candidate.document_id

            entry.rrf_score += rrf_contribution(rank, k=k, weight=weight)
            entry.per_channel_scores[channel] = candidate.channel_score
            entry.per_channel_ranks[channel] = rank
            entry.sources.append(channel)
            for tag in candidate.extras.get("matched_tags", ()):
                if tag not in entry.matched_tags:
                    entry.matched_tags.append(tag)

    fused = sorted(merged.values(), key=lambda r: (-round(r.rrf_score, TIE_PRECISION), r.id))
    if limit is not None:
        fused = fused[:limit]
    return fused
