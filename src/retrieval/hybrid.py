"""
Hybrid searcher combining semantic, lexical and tag retrieval with RRF fusion.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .config import CHANNELS, LEXICAL, SEMANTIC, TAGS, SearchConfig
from .errors import ConfigurationError, FusionFailure
from .filters import NormalizedQuery, normalize_request, requires_extractor
from .lexical import LexicalCandidateGenerator
from .rrf_merger import rrf_merge
from .semantic import SemanticCandidateGenerator
from .stores import DocumentMetadataLookup, EmbeddingGateway, TimeframeExtractor
from .tags import TagCandidateGenerator
from .types import (
    UNKNOWN,
    CandidateRecord,
    ChannelDiagnostics,
    ChannelStatus,
    FusedResult,
    SearchRequest,
    SearchResponse,
)

logger = logging.getLogger(__name__)


@dataclass
class _ChannelRun:
    """What a channel coroutine hands back to the collector."""

    candidates: List[CandidateRecord]
    status: ChannelStatus = ChannelStatus.OK
    error: Optional[str] = None
    fallback: Optional[str] = None
    highest_similarity: Optional[float] = None


ChannelCall = Callable[[], Awaitable[_ChannelRun]]


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)


class HybridSearcher:
    """
    Fusion engine over the three candidate generators.

    A search runs NORMALIZE -> DISPATCH -> COLLECT -> FUSE -> TRUNCATE and
    always returns a ``SearchResponse``. A failing channel contributes no
    candidates and is reported in the diagnostics; only when every
    dispatched channel fails does the response carry an error. The one
    exception that escapes is ``ConfigurationError``.
    """

    def __init__(
        self,
        *,
        semantic: SemanticCandidateGenerator,
        lexical: LexicalCandidateGenerator,
        tags: TagCandidateGenerator,
        metadata: Optional[DocumentMetadataLookup] = None,
        config: Optional[SearchConfig] = None,
        timeframe_extractor: Optional[TimeframeExtractor] = None,
    ):
        self.config = (config or SearchConfig()).validate()
        self.semantic = semantic
        self.lexical = lexical
        self.tags = tags
        self.metadata = metadata
        self.timeframe_extractor = timeframe_extractor

    @classmethod
    def from_store(
        cls,
        store,
        gateway: Optional[EmbeddingGateway],
        *,
        config: Optional[SearchConfig] = None,
        timeframe_extractor: Optional[TimeframeExtractor] = None,
    ) -> "HybridSearcher":
        """Build all generators over one store implementing every store protocol."""
        config = (config or SearchConfig()).validate()
        return cls(
            semantic=SemanticCandidateGenerator(store, gateway),
            lexical=LexicalCandidateGenerator(store, trigram_threshold=config.trigram_threshold),
            tags=TagCandidateGenerator(store),
            metadata=store,
            config=config,
            timeframe_extractor=timeframe_extractor,
        )

    async def search(self, request: SearchRequest) -> SearchResponse:
        """Run a hybrid search; see the class docstring for failure behaviour."""
        if requires_extractor(request.timeframe) and self.timeframe_extractor is None:
            raise ConfigurationError(f"timeframe={request.timeframe!r} requires a timeframe extractor")

        started = time.perf_counter()
        diagnostics: Dict[str, ChannelDiagnostics] = {}
        try:
            normalized = await self._normalize(request)
            limit = min(request.limit, self.config.max_limit)
            candidate_limit = min(request.candidate_limit, self.config.max_limit)

            channel_results = await self._dispatch(request, normalized, candidate_limit, diagnostics)

            dispatched = [d for d in diagnostics.values() if d.status is not ChannelStatus.SKIPPED]
            if dispatched and all(d.failed for d in dispatched):
                reasons = "; ".join(f"{d.channel}: {d.error}" for d in dispatched)
                raise FusionFailure(f"All retrieval channels failed ({reasons})")

            fused = rrf_merge(
                channel_results,
                k=self.config.rrf_k,
                weights=self.config.weights,
                limit=limit,
            )
            await self._attach_metadata(fused)
        except (asyncio.CancelledError, ConfigurationError):
            raise
        except Exception as e:
            logger.exception("Hybrid search failed for query %r", request.query_text)
            return SearchResponse.failure(
                request.query_text,
                f"Hybrid search failed: {e}",
                channel_diagnostics=diagnostics,
                execution_time_ms=_elapsed_ms(started),
            )

        return SearchResponse(
            query=request.query_text,
            results=fused,
            channel_diagnostics=diagnostics,
            execution_time_ms=_elapsed_ms(started),
            extracted_timeframe=normalized.extracted_timeframe,
        )

    async def _normalize(self, request: SearchRequest) -> NormalizedQuery:
        if requires_extractor(request.timeframe):
            # Extractors are synchronous.
            return await asyncio.to_thread(normalize_request, request, self.timeframe_extractor)
        return normalize_request(request)

    def _channel_calls(
        self,
        request: SearchRequest,
        normalized: NormalizedQuery,
        candidate_limit: int,
    ) -> Dict[str, Optional[ChannelCall]]:
        query = normalized.query
        scope = normalized.scope
        has_query = bool(query and query.strip())

        async def semantic() -> _ChannelRun:
            outcome = await self.semantic.search(
                query,
                limit=candidate_limit,
                threshold=self.config.similarity_threshold,
                scope=scope,
            )
            if not outcome.embedding_available:
                return _ChannelRun(
                    [],
                    status=ChannelStatus.DEGRADED,
                    error="embedding unavailable for query",
                )
            return _ChannelRun(outcome.candidates, highest_similarity=outcome.highest_similarity)

        async def lexical() -> _ChannelRun:
            outcome = await self.lexical.search(query, limit=candidate_limit, scope=scope)
            if outcome.fallback:
                return _ChannelRun(
                    outcome.candidates,
                    status=ChannelStatus.DEGRADED,
                    error=outcome.error,
                    fallback=outcome.fallback,
                )
            return _ChannelRun(outcome.candidates)

        async def tags() -> _ChannelRun:
            return _ChannelRun(await self.tags.generate(request.tags, limit=candidate_limit, scope=scope))

        return {
            SEMANTIC: semantic if has_query else None,
            LEXICAL: lexical if has_query else None,
            TAGS: tags if request.tags else None,
        }

    async def _run_channel(self, name: str, call: Optional[ChannelCall]) -> Tuple[ChannelDiagnostics, List[CandidateRecord]]:
        if call is None:
            return ChannelDiagnostics(channel=name, status=ChannelStatus.SKIPPED), []

        started = time.perf_counter()
        try:
            if self.config.channel_timeout is None:
                run = await call()
            else:
                run = await asyncio.wait_for(call(), timeout=self.config.channel_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s channel timed out after %ss", name, self.config.channel_timeout)
            diag = ChannelDiagnostics(
                channel=name,
                status=ChannelStatus.TIMED_OUT,
                elapsed_ms=_elapsed_ms(started),
                error=f"timed out after {self.config.channel_timeout}s",
            )
            return diag, []
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("%s channel failed", name)
            diag = ChannelDiagnostics(
                channel=name,
                status=ChannelStatus.FAILED,
                elapsed_ms=_elapsed_ms(started),
                error=f"{type(e).__name__}: {e}",
            )
            return diag, []

        diag = ChannelDiagnostics(
            channel=name,
            status=run.status,
            candidate_count=len(run.candidates),
            elapsed_ms=_elapsed_ms(started),
            error=run.error,
            fallback=run.fallback,
            highest_similarity=run.highest_similarity,
        )
        logger.debug("%s channel: %d candidates in %.1fms", name, diag.candidate_count, diag.elapsed_ms)
        return diag, run.candidates

    async def _dispatch(
        self,
        request: SearchRequest,
        normalized: NormalizedQuery,
        candidate_limit: int,
        diagnostics: Dict[str, ChannelDiagnostics],
    ) -> Dict[str, List[CandidateRecord]]:
        calls = self._channel_calls(request, normalized, candidate_limit)

        if request.run_channels_concurrently:
            outcomes = await asyncio.gather(*(self._run_channel(name, calls[name]) for name in CHANNELS))
        else:
            outcomes = []
            for name in CHANNELS:
                outcomes.append(await self._run_channel(name, calls[name]))

        channel_results: Dict[str, List[CandidateRecord]] = {}
        for name, (diag, candidates) in zip(CHANNELS, outcomes):
            diagnostics[name] = diag
            channel_results[name] = candidates
        return channel_results

    async def _attach_metadata(self, results: List[FusedResult]) -> None:
        if self.metadata is None:
            return
        document_ids = list(dict.fromkeys(r.document_id for r in results if r.document_id is not None))
        if not document_ids:
            return
        fetched = await asyncio.gather(
            *(self.metadata.fetch(doc_id) for doc_id in document_ids),
            return_exceptions=True,
        )
        by_id = {}
        for doc_id, meta in zip(document_ids, fetched):
            if isinstance(meta, asyncio.CancelledError):
                raise meta
            if isinstance(meta, Exception):
                logger.warning("Document metadata lookup failed for %s: %s", doc_id, meta)
                continue
            by_id[doc_id] = meta
        for result in results:
            meta = by_id.get(result.document_id)
            if meta is None:
                continue
            result.document_title = meta.title or UNKNOWN
            result.document_location = meta.location or UNKNOWN
