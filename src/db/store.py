"""
PostgreSQL implementation of the retrieval store protocols.

Vector search uses pgvector's cosine distance operator, full text uses the
built-in tsvector machinery, and fuzzy matching uses pg_trgm. Every call
opens its own session, so channels running concurrently never share one
and a failed statement never affects the next call.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, List, Optional, Sequence

from sqlalchemy import Select, cast, distinct, func, literal, or_, select, update
from sqlalchemy.dialects.postgresql import REGCONFIG, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.retrieval.chunker import Chunk
from src.retrieval.config import LEXICAL, SEMANTIC, TAGS
from src.retrieval.errors import ChannelUnavailable
from src.retrieval.filters import SearchScope
from src.retrieval.stores import DocumentMetadata, Neighbor, TagMatch, TextMatch
from src.retrieval.tags import expand_tag_hierarchy
from src.retrieval.types import PassageId

from .models import Content, Document, Embedding, EmbeddingTag, Tag

logger = logging.getLogger(__name__)

DEFAULT_TEXT_SEARCH_CONFIG = "english"
LIKE_ESCAPE = "\\"


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so ``value`` matches literally."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def scope_conditions(scope: SearchScope) -> List[Any]:
    """WHERE clauses for ``scope``; assumes Content and Document are joined."""
    conditions: List[Any] = []
    if scope.document_type is not None:
        conditions.append(Document.document_type == scope.document_type)
    if scope.keywords:
        conditions.append(Document.keywords.overlap(list(scope.keywords)))
    if scope.time_ranges:
        conditions.append(or_(*(Embedding.created_at.between(r.start, r.end) for r in scope.time_ranges)))
    if scope.content_id is not None:
        conditions.append(Embedding.content_id == scope.content_id)
    if scope.content_kind is not None:
        conditions.append(Content.kind == scope.content_kind.value)
    if scope.embedding_model is not None:
        conditions.append(Content.embedding_model == scope.embedding_model)
    return conditions


def _scoped(stmt: Select, scope: SearchScope) -> Select:
    stmt = (
        stmt.select_from(Embedding)
        .join(Content, Embedding.content_id == Content.id)
        .join(Document, Content.document_id == Document.id)
    )
    conditions = scope_conditions(scope)
    if conditions:
        stmt = stmt.where(*conditions)
    return stmt


def neighbors_statement(vector: Sequence[float], scope: SearchScope, k: int) -> Select:
    distance = Embedding.embedding_vector.cosine_distance(list(vector)).label("distance")
    stmt = select(
        Embedding.id,
        distance,
        Embedding.content,
        Content.document_id,
        Embedding.chunk_index,
        Content.embedding_model,
        Embedding.usage_count,
        Embedding.last_returned_at,
    )
    return _scoped(stmt, scope).order_by(distance, Embedding.id).limit(k)


def ranked_match_statement(
    query: str,
    scope: SearchScope,
    limit: int,
    text_search_config: str = DEFAULT_TEXT_SEARCH_CONFIG,
) -> Select:
    ts_config = cast(literal(text_search_config), REGCONFIG)
    document = func.to_tsvector(ts_config, Embedding.content)
    ts_query = func.plainto_tsquery(ts_config, query)
    rank = func.ts_rank(document, ts_query).label("score")
    stmt = select(Embedding.id, Embedding.content, rank, Content.document_id)
    return (
        _scoped(stmt, scope)
        .where(document.op("@@")(ts_query))
        .order_by(rank.desc(), Embedding.id)
        .limit(limit)
    )


def trigram_match_statement(query: str, scope: SearchScope, threshold: float, limit: int) -> Select:
    similarity = func.similarity(Embedding.content, query).label("score")
    stmt = select(Embedding.id, Embedding.content, similarity, Content.document_id)
    return (
        _scoped(stmt, scope)
        .where(similarity >= threshold)
        .order_by(similarity.desc(), Embedding.id)
        .limit(limit)
    )


def substring_match_statement(query: str, scope: SearchScope, limit: int) -> Select:
    pattern = f"%{escape_like(query)}%"
    stmt = select(Embedding.id, Embedding.content, Content.document_id)
    return (
        _scoped(stmt, scope)
        .where(Embedding.content.ilike(pattern, escape=LIKE_ESCAPE))
        .order_by(Embedding.id)
        .limit(limit)
    )


def tag_match_statement(tag_names: Sequence[str], scope: SearchScope, limit: int) -> Select:
    matched = func.array_agg(Tag.name).label("matched_tags")
    match_count = func.count(distinct(Tag.id))
    stmt = select(Embedding.id, Embedding.content, Content.document_id, matched)
    stmt = _scoped(stmt, scope)
    return (
        stmt.join(EmbeddingTag, EmbeddingTag.embedding_id == Embedding.id)
        .join(Tag, EmbeddingTag.tag_id == Tag.id)
        .where(Tag.name.in_(list(tag_names)))
        .group_by(Embedding.id, Embedding.content, Content.document_id)
        .order_by(match_count.desc(), Embedding.id)
        .limit(limit)
    )


def mark_used_statement(ids: Sequence[PassageId], when: dt.datetime):
    return (
        update(Embedding)
        .where(Embedding.id.in_(list(ids)))
        .values(usage_count=Embedding.usage_count + 1, last_returned_at=when)
    )


class PostgresStore:
    """Vector, text-search, tag and metadata store backed by PostgreSQL."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        text_search_config: str = DEFAULT_TEXT_SEARCH_CONFIG,
    ):
        self._session_factory = session_factory
        self.text_search_config = text_search_config

    async def _fetch_all(self, channel: str, stmt: Select):
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return result.all()
        except SQLAlchemyError as e:
            raise ChannelUnavailable(channel, f"{type(e).__name__}: {e}") from e

    # -- VectorStore -----------------------------------------------------

    async def nearest_neighbors(self, vector: Sequence[float], scope: SearchScope, k: int) -> List[Neighbor]:
        if k <= 0:
            return []
        rows = await self._fetch_all(SEMANTIC, neighbors_statement(vector, scope, k))
        return [
            Neighbor(
                id=row.id,
                distance=float(row.distance),
                text=row.content,
                document_id=row.document_id,
                chunk_index=row.chunk_index,
                embedding_model=row.embedding_model,
                usage_count=row.usage_count,
                last_returned_at=row.last_returned_at,
            )
            for row in rows
        ]

    async def mark_used(self, ids: Sequence[PassageId], when: dt.datetime) -> None:
        if not ids:
            return
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(mark_used_statement(ids, when))
        except SQLAlchemyError as e:
            raise ChannelUnavailable(SEMANTIC, f"{type(e).__name__}: {e}") from e

    # -- TextSearchStore -------------------------------------------------

    async def ranked_match(self, query: str, scope: SearchScope, limit: int) -> List[TextMatch]:
        stmt = ranked_match_statement(query, scope, limit, self.text_search_config)
        rows = await self._fetch_all(LEXICAL, stmt)
        return [
            TextMatch(id=row.id, text=row.content, score=max(0.0, float(row.score)), document_id=row.document_id)
            for row in rows
        ]

    async def trigram_match(
        self, query: str, scope: SearchScope, threshold: float, limit: int
    ) -> List[TextMatch]:
        rows = await self._fetch_all(LEXICAL, trigram_match_statement(query, scope, threshold, limit))
        return [
            TextMatch(id=row.id, text=row.content, score=float(row.score), document_id=row.document_id)
            for row in rows
        ]

    async def substring_match(self, query: str, scope: SearchScope, limit: int) -> List[TextMatch]:
        rows = await self._fetch_all(LEXICAL, substring_match_statement(query, scope, limit))
        return [TextMatch(id=row.id, text=row.content, document_id=row.document_id) for row in rows]

    # -- TagStore --------------------------------------------------------

    async def subjects_with_tags(
        self, tag_names: Sequence[str], scope: SearchScope, limit: int
    ) -> List[TagMatch]:
        if not tag_names:
            return []
        rows = await self._fetch_all(TAGS, tag_match_statement(tag_names, scope, limit))
        return [
            TagMatch(
                id=row.id,
                text=row.content,
                matched_tags=tuple(sorted(set(row.matched_tags))),
                document_id=row.document_id,
            )
            for row in rows
        ]

    # -- DocumentMetadataLookup ------------------------------------------

    async def fetch(self, document_id: PassageId) -> Optional[DocumentMetadata]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Document.title, Document.location).where(Document.id == document_id)
            )
            row = result.first()
        if row is None:
            return None
        return DocumentMetadata(title=row.title, location=row.location)

    # -- writes ----------------------------------------------------------

    async def add_passages(
        self,
        content_id: PassageId,
        chunks: Sequence[Chunk],
        vectors: Sequence[Sequence[float]],
    ) -> List[PassageId]:
        if len(chunks) != len(vectors):
            raise ValueError(f"{len(chunks)} chunks but {len(vectors)} vectors")
        rows = [
            Embedding(
                content_id=content_id,
                chunk_index=c.index,
                content=c.text,
                embedding_vector=list(v),
            )
            for c, v in zip(chunks, vectors)
        ]
        async with self._session_factory() as session, session.begin():
            session.add_all(rows)
            await session.flush()
            ids = [row.id for row in rows]
        logger.debug("Stored %d passages for content %s", len(ids), content_id)
        return ids

    async def tag_passage(
        self,
        passage_id: PassageId,
        names: Sequence[str],
        *,
        confidence: float = 1.0,
        source: str = "manual",
    ) -> None:
        """Attach tags to a passage, creating them and their ancestors as needed."""
        tags = {}
        leaf_names = []
        for name in names:
            hierarchy = expand_tag_hierarchy(name)
            tags.update((tag.name, tag) for tag in hierarchy)
            leaf_names.append(hierarchy[-1].name)
        if not tags:
            return

        async with self._session_factory() as session, session.begin():
            await session.execute(
                insert(Tag)
                .values([{"name": t.name, "parent_name": t.parent_name, "depth": t.depth} for t in tags.values()])
                .on_conflict_do_nothing(index_elements=[Tag.name])
            )
            result = await session.execute(select(Tag.id).where(Tag.name.in_(leaf_names)))
            tag_ids = [row.id for row in result]
            if not tag_ids:
                logger.warning("No tag rows found for %s; passage %s left untagged", leaf_names, passage_id)
                return
            link = insert(EmbeddingTag).values(
                [
                    {"embedding_id": passage_id, "tag_id": tag_id, "confidence": confidence, "source": source}
                    for tag_id in tag_ids
                ]
            )
            await session.execute(
                link.on_conflict_do_update(
                    index_elements=[EmbeddingTag.embedding_id, EmbeddingTag.tag_id],
                    set_={"confidence": link.excluded.confidence, "source": link.excluded.source},
                )
            )
