"""
Tests for the hybrid fusion engine.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import time

import pytest

from src.retrieval import (
    CandidateRecord,
    ChannelStatus,
    ConfigurationError,
    HybridSearcher,
    InMemoryStore,
    SearchConfig,
    SearchRequest,
    TimeRange,
)
from src.retrieval.lexical import LexicalSearchOutcome
from src.retrieval.semantic import SemanticCandidateGenerator, SemanticSearchOutcome
from src.retrieval.stores import DocumentMetadata


def _cand(pid, score: float, channel: str, document_id=None, **extras) -> CandidateRecord:
    return CandidateRecord(
        id=pid,
        content=f"content of {pid}",
        channel_score=score,
        channel_name=channel,
        document_id=document_id,
        extras=extras,
    )


class _StubSemantic:
    def __init__(self, candidates=(), *, error=None, delay=0.0, embedding_available=True, log=None):
        self.candidates = list(candidates)
        self.error = error
        self.delay = delay
        self.embedding_available = embedding_available
        self.log = log if log is not None else []
        self.calls = []

    async def search(self, query, *, limit, threshold, scope):
        self.log.append("semantic")
        self.calls.append({"query": query, "limit": limit, "scope": scope})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if not self.embedding_available:
            return SemanticSearchOutcome(embedding_available=False)
        highest = max((c.channel_score for c in self.candidates), default=None)
        return SemanticSearchOutcome(candidates=self.candidates[:limit], highest_similarity=highest)


class _StubLexical:
    def __init__(self, candidates=(), *, error=None, delay=0.0, fallback=None, log=None):
        self.candidates = list(candidates)
        self.error = error
        self.delay = delay
        self.fallback = fallback
        self.log = log if log is not None else []
        self.calls = []

    async def search(self, query, *, limit, scope):
        self.log.append("lexical")
        self.calls.append({"query": query, "limit": limit, "scope": scope})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return LexicalSearchOutcome(
            candidates=self.candidates[:limit],
            fallback=self.fallback,
            error="fulltext unavailable" if self.fallback else None,
        )


class _StubTags:
    def __init__(self, candidates=(), *, error=None, log=None):
        self.candidates = list(candidates)
        self.error = error
        self.log = log if log is not None else []
        self.calls = []

    async def generate(self, tags, *, limit, scope):
        self.log.append("tags")
        self.calls.append({"tags": tags, "limit": limit})
        if self.error is not None:
            raise self.error
        return self.candidates[:limit]


class _StubMetadata:
    def __init__(self, documents: dict):
        self.documents = documents

    async def fetch(self, document_id):
        return self.documents.get(document_id)


class _StubExtractor:
    def __init__(self, rewritten: str, time_range):
        self.rewritten = rewritten
        self.time_range = time_range

    def extract(self, query: str):
        return self.rewritten, self.time_range


def _scenario_searcher(log=None, **kwargs) -> HybridSearcher:
    return HybridSearcher(
        semantic=_StubSemantic([_cand("P1", 0.9, "semantic"), _cand("P2", 0.8, "semantic")], log=log),
        lexical=_StubLexical([_cand("P2", 1.3, "lexical")], log=log),
        tags=_StubTags([_cand("P1", 1.0, "tags", matched_tags=["ml"])], log=log),
        **kwargs,
    )


@pytest.mark.anyio
async def test_machine_learning_scenario_fuses_in_expected_order():
    searcher = _scenario_searcher()
    response = await searcher.search(SearchRequest(query_text="machine learning", tags=["ml"], limit=2))

    assert response.succeeded
    assert [r.id for r in response.results] == ["P1", "P2"]
    p1, p2 = response.results
    assert p1.rrf_score == pytest.approx(1 / 61 + 1 / 61)
    assert p1.rrf_score == pytest.approx(0.03279, abs=1e-5)
    assert p2.rrf_score == pytest.approx(1 / 62 + 1 / 61)
    assert p1.sources == ["semantic", "tags"]
    assert p2.sources == ["semantic", "lexical"]
    assert p1.matched_tags == ["ml"]
    assert response.total_results == 2
    assert all(d.status is ChannelStatus.OK for d in response.channel_diagnostics.values())
    assert response.channel_diagnostics["semantic"].highest_similarity == pytest.approx(0.9)


@pytest.mark.anyio
async def test_sequential_dispatch_matches_concurrent_and_keeps_order():
    log: list[str] = []
    searcher = _scenario_searcher(log=log)

    concurrent = await searcher.search(SearchRequest(query_text="machine learning", tags=["ml"]))
    log.clear()
    sequential = await searcher.search(
        SearchRequest(query_text="machine learning", tags=["ml"], run_channels_concurrently=False)
    )

    assert log == ["semantic", "lexical", "tags"]
    assert [(r.id, r.rrf_score) for r in sequential.results] == [
        (r.id, r.rrf_score) for r in concurrent.results
    ]


@pytest.mark.anyio
async def test_failing_channel_is_reported_not_raised():
    searcher = HybridSearcher(
        semantic=_StubSemantic(error=RuntimeError("vector index offline")),
        lexical=_StubLexical([_cand(1, 1.5, "lexical")]),
        tags=_StubTags(),
    )
    response = await searcher.search(SearchRequest(query_text="kafka"))

    assert response.succeeded
    assert [r.id for r in response.results] == [1]
    semantic = response.channel_diagnostics["semantic"]
    assert semantic.status is ChannelStatus.FAILED
    assert semantic.error == "RuntimeError: vector index offline"
    assert response.channel_diagnostics["tags"].status is ChannelStatus.SKIPPED


@pytest.mark.anyio
async def test_slow_channel_times_out():
    searcher = HybridSearcher(
        semantic=_StubSemantic([_cand(1, 0.9, "semantic")]),
        lexical=_StubLexical([_cand(2, 1.2, "lexical")], delay=5.0),
        tags=_StubTags(),
        config=SearchConfig(channel_timeout=0.05),
    )
    response = await searcher.search(SearchRequest(query_text="kafka"))

    assert [r.id for r in response.results] == [1]
    assert response.channel_diagnostics["lexical"].status is ChannelStatus.TIMED_OUT


@pytest.mark.anyio
async def test_all_channels_failing_returns_error_response():
    searcher = HybridSearcher(
        semantic=_StubSemantic(error=RuntimeError("down")),
        lexical=_StubLexical(error=RuntimeError("down")),
        tags=_StubTags(error=RuntimeError("down")),
    )
    response = await searcher.search(SearchRequest(query_text="kafka", tags=["infra"]))

    assert not response.succeeded
    assert response.results == []
    assert response.total_results == 0
    assert response.error_message.startswith("Hybrid search failed:")
    payload = response.to_dict()
    assert payload["results"] == []
    assert payload["total_results"] == 0
    assert payload["query"] == "kafka"


@pytest.mark.anyio
async def test_degraded_channels_do_not_fail_search():
    searcher = HybridSearcher(
        semantic=_StubSemantic(embedding_available=False),
        lexical=_StubLexical([_cand(3, 0.5, "lexical")], fallback="substring"),
        tags=_StubTags(),
    )
    response = await searcher.search(SearchRequest(query_text="kafka"))

    assert response.succeeded
    assert [r.id for r in response.results] == [3]
    assert response.channel_diagnostics["semantic"].status is ChannelStatus.DEGRADED
    lexical = response.channel_diagnostics["lexical"]
    assert lexical.status is ChannelStatus.DEGRADED
    assert lexical.fallback == "substring"


@pytest.mark.anyio
async def test_auto_timeframe_without_extractor_raises():
    searcher = _scenario_searcher()
    with pytest.raises(ConfigurationError):
        await searcher.search(SearchRequest(query_text="notes from last week", timeframe="auto"))


@pytest.mark.anyio
async def test_auto_timeframe_rewrites_query_and_reports_range():
    window = TimeRange(
        start=dt.datetime(2025, 1, 6, tzinfo=dt.timezone.utc),
        end=dt.datetime(2025, 1, 12, tzinfo=dt.timezone.utc),
    )
    semantic = _StubSemantic([_cand(1, 0.9, "semantic")])
    lexical = _StubLexical()
    searcher = HybridSearcher(
        semantic=semantic,
        lexical=lexical,
        tags=_StubTags(),
        timeframe_extractor=_StubExtractor("notes", window),
    )

    response = await searcher.search(SearchRequest(query_text="notes from last week", timeframe="auto"))

    assert response.extracted_timeframe == window
    assert semantic.calls[0]["query"] == "notes"
    assert lexical.calls[0]["scope"].time_ranges == (window,)
    assert response.query == "notes from last week"


@pytest.mark.anyio
async def test_blank_query_without_tags_skips_every_channel():
    searcher = _scenario_searcher()
    response = await searcher.search(SearchRequest(query_text="   "))

    assert response.succeeded
    assert response.results == []
    assert {d.status for d in response.channel_diagnostics.values()} == {ChannelStatus.SKIPPED}


@pytest.mark.anyio
async def test_tags_only_search_runs_tag_channel():
    searcher = _scenario_searcher()
    response = await searcher.search(SearchRequest(query_text="", tags=["ml"]))

    assert [r.id for r in response.results] == ["P1"]
    assert response.channel_diagnostics["semantic"].status is ChannelStatus.SKIPPED


@pytest.mark.anyio
async def test_limits_are_clamped_to_max_limit():
    semantic = _StubSemantic([_cand(i, 1.0 / i, "semantic") for i in range(1, 6)])
    searcher = HybridSearcher(
        semantic=semantic,
        lexical=_StubLexical(),
        tags=_StubTags(),
        config=SearchConfig(max_limit=3),
    )
    response = await searcher.search(SearchRequest(query_text="q", limit=50, candidate_limit=500))

    assert semantic.calls[0]["limit"] == 3
    assert [r.id for r in response.results] == [1, 2, 3]


@pytest.mark.anyio
async def test_document_metadata_is_attached():
    searcher = HybridSearcher(
        semantic=_StubSemantic([_cand(1, 0.9, "semantic", document_id=10), _cand(2, 0.8, "semantic", document_id=20)]),
        lexical=_StubLexical(),
        tags=_StubTags(),
        metadata=_StubMetadata({10: DocumentMetadata(title="Kafka Guide", location="/kafka.pdf")}),
    )
    response = await searcher.search(SearchRequest(query_text="kafka"))

    first, second = response.results
    assert (first.document_title, first.document_location) == ("Kafka Guide", "/kafka.pdf")
    assert (second.document_title, second.document_location) == ("Unknown", "Unknown")


def test_invalid_weights_raise_configuration_error():
    with pytest.raises(ConfigurationError):
        _scenario_searcher(config=SearchConfig(lexical_weight=-1.0))


@pytest.mark.anyio
async def test_from_store_runs_real_generators():
    store = InMemoryStore()
    store.add_document(1, title="Streaming", location="/streaming.md")
    store.add_content(1, document_id=1, embedding_model="fake")
    store.add_passage(content_id=1, passage_id=1, text="Kafka partitions order messages", vector=[1.0, 0.0])
    store.add_passage(content_id=1, passage_id=2, text="Sourdough needs a starter", vector=[0.0, 1.0])
    store.tag_passage(1, ["streaming:kafka"])

    class _Gateway:
        model_name = "fake"

        def embed(self, text):
            return [1.0, 0.0]

        def embed_batch(self, texts):
            return [[1.0, 0.0] for _ in texts]

    searcher = HybridSearcher.from_store(store, _Gateway())
    response = await searcher.search(
        SearchRequest(query_text="kafka partitions", tags=["streaming:kafka"], limit=5)
    )

    assert response.succeeded
    top = response.results[0]
    assert top.id == 1
    assert set(top.sources) == {"semantic", "lexical", "tags"}
    assert top.document_title == "Streaming"
    assert store.passages[1].usage_count == 1


class _SlowChannel:
    """Stands in for any channel; sleeps, then returns one candidate named after itself."""

    def __init__(self, channel: str, delay: float):
        self.channel = channel
        self.delay = delay
        self.started = asyncio.Event()
        self.cancelled = False

    async def _wait(self):
        self.started.set()
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return [_cand(self.channel, 1.0, self.channel)]

    async def search(self, query, *, limit, scope, **kwargs):
        candidates = await self._wait()
        if self.channel == "semantic":
            return SemanticSearchOutcome(candidates=candidates, highest_similarity=1.0)
        return LexicalSearchOutcome(candidates=candidates)

    async def generate(self, tags, *, limit, scope):
        return await self._wait()


def _slow_channels(delay: float) -> dict:
    return {name: _SlowChannel(name, delay) for name in ("semantic", "lexical", "tags")}


@pytest.mark.anyio
async def test_concurrent_dispatch_overlaps_channels():
    channels = _slow_channels(0.2)
    searcher = HybridSearcher(**channels)

    started = time.perf_counter()
    response = await searcher.search(SearchRequest(query_text="q", tags=["t"]))
    elapsed = time.perf_counter() - started

    assert len(response.results) == 3
    assert elapsed < 0.45


@pytest.mark.anyio
async def test_sequential_dispatch_runs_channels_one_after_another():
    channels = _slow_channels(0.2)
    searcher = HybridSearcher(**channels)

    started = time.perf_counter()
    response = await searcher.search(
        SearchRequest(query_text="q", tags=["t"], run_channels_concurrently=False)
    )
    elapsed = time.perf_counter() - started

    assert len(response.results) == 3
    assert elapsed >= 0.55


@pytest.mark.anyio
async def test_cancelling_search_cancels_running_channels():
    channels = _slow_channels(5.0)
    searcher = HybridSearcher(**channels)

    task = asyncio.create_task(searcher.search(SearchRequest(query_text="q", tags=["t"])))
    await asyncio.wait_for(asyncio.gather(*(c.started.wait() for c in channels.values())), timeout=1.0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert all(c.cancelled for c in channels.values())


@pytest.mark.anyio
async def test_concurrent_queries_count_every_usage():
    store = InMemoryStore()
    store.add_document(1, title="Streaming", location="/streaming.md")
    store.add_content(1, document_id=1, embedding_model="fake")
    store.add_passage(content_id=1, passage_id=1, text="Kafka partitions order messages", vector=[1.0, 0.0])

    class _Gateway:
        model_name = "fake"

        def embed(self, text):
            return [1.0, 0.0]

        def embed_batch(self, texts):
            return [[1.0, 0.0] for _ in texts]

    generator = SemanticCandidateGenerator(store, _Gateway())
    results = await asyncio.gather(*(generator.generate("kafka", limit=5) for _ in range(20)))

    assert all([c.id for c in candidates] == [1] for candidates in results)
    assert store.passages[1].usage_count == 20


class _FailingMetadata:
    async def fetch(self, document_id):
        if document_id == 7:
            raise RuntimeError("metadata db down")
        return DocumentMetadata(title="Kept", location="/kept.md")


@pytest.mark.anyio
async def test_metadata_lookup_failure_keeps_ranking():
    searcher = HybridSearcher(
        semantic=_StubSemantic([_cand(1, 0.9, "semantic", document_id=7), _cand(2, 0.8, "semantic", document_id=8)]),
        lexical=_StubLexical(),
        tags=_StubTags(),
        metadata=_FailingMetadata(),
    )
    response = await searcher.search(SearchRequest(query_text="kafka"))

    assert response.succeeded
    first, second = response.results
    assert first.id == 1
    assert (first.document_title, first.document_location) == ("Unknown", "Unknown")
    assert (second.document_title, second.document_location) == ("Kept", "/kept.md")


@pytest.mark.anyio
async def test_time_expression_without_extractor_raises():
    searcher = _scenario_searcher()
    with pytest.raises(ConfigurationError):
        await searcher.search(SearchRequest(query_text="kafka", timeframe=["last week"]))


@pytest.mark.anyio
async def test_several_windows_reach_every_channel():
    window = TimeRange(
        start=dt.datetime(2025, 1, 6, tzinfo=dt.timezone.utc),
        end=dt.datetime(2025, 1, 12, tzinfo=dt.timezone.utc),
    )
    day = dt.date(2025, 3, 1)
    semantic = _StubSemantic([_cand(1, 0.9, "semantic")])
    lexical = _StubLexical()
    searcher = HybridSearcher(
        semantic=semantic,
        lexical=lexical,
        tags=_StubTags(),
        timeframe_extractor=_StubExtractor("", window),
    )

    response = await searcher.search(SearchRequest(query_text="kafka notes", timeframe=[day, "last week"]))

    expected = (TimeRange.for_day(day), window)
    assert semantic.calls[0]["scope"].time_ranges == expected
    assert lexical.calls[0]["scope"].time_ranges == expected
    assert semantic.calls[0]["query"] == "kafka notes"
    assert response.extracted_timeframe is None
