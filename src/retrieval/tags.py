"""
Tag candidate generator and hierarchical tag helpers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .config import TAGS
from .filters import SearchScope
from .stores import TagStore
from .types import CandidateRecord

logger = logging.getLogger(__name__)

TAG_SEPARATOR = ":"


@dataclass(frozen=True)
class Tag:
    """A node in the tag forest; the hierarchy is encoded in the name."""

    name: str
    parent_name: Optional[str]
    depth: int


def expand_tag_hierarchy(name: str) -> List[Tag]:
    """
    Every prefix of a hierarchical tag, root first.

    ``"database:postgresql:indexes"`` yields ``database`` (depth 0),
    ``database:postgresql`` (depth 1) and the full name (depth 2).
    """
    segments = [s.strip() for s in name.split(TAG_SEPARATOR)]
    if not all(segments):
        raise ValueError(f"Invalid tag format: {name!r}")
    tags: List[Tag] = []
    parent: Optional[str] = None
    for depth in range(len(segments)):
        current = TAG_SEPARATOR.join(segments[: depth + 1])
        tags.append(Tag(name=current, parent_name=parent, depth=depth))
        parent = current
    return tags


def _unique(tags: Optional[Sequence[str]]) -> List[str]:
    requested: List[str] = []
    for tag in tags or ():
        tag = tag.strip()
        if tag and tag not in requested:
            requested.append(tag)
    return requested


class TagCandidateGenerator:
    """Scores passages by the fraction of requested tags they carry."""

    def __init__(self, store: TagStore):
        self.store = store

    async def generate(
        self,
        tags: Optional[Sequence[str]],
        *,
        limit: int,
        scope: Optional[SearchScope] = None,
    ) -> List[CandidateRecord]:
        """
        Return tagged passages ordered by ``matched_fraction`` descending.

        Ties are broken by ascending passage id.
        """
        requested = _unique(tags)
        if not requested or limit <= 0:
            return []

        matches = await self.store.subjects_with_tags(requested, scope or SearchScope(), limit)

        wanted = set(requested)
        by_id = {}
        for match in matches:
            matched = sorted(wanted.intersection(match.matched_tags))
            if not matched:
                continue
            existing = by_id.get(match.id)
            if existing is not None:
                matched = sorted(set(matched) | set(existing.extras["matched_tags"]))
            fraction = len(matched) / len(requested)
            by_id[match.id] = CandidateRecord(
                id=match.id,
                content=match.text,
                channel_score=fraction,
                channel_name=TAGS,
                document_id=match.document_id,
                extras={"matched_tags": matched, "tag_score": fraction},
            )

        ranked = sorted(by_id.values(), key=lambda c: (-c.channel_score, c.id))
        logger.debug("Tag channel: %d subjects matched %s", len(ranked), requested)
        return ranked[:limit]
