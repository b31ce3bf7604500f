"""
Tests for request validation and filter/timeframe normalisation.
"""

from __future__ import annotations

import datetime as dt

import pytest
from pydantic import ValidationError

from src.retrieval import (
    ConfigurationError,
    ContentKind,
    SearchFilters,
    SearchRequest,
    SearchScope,
    TimeframeError,
    TimeRange,
    build_scope,
    normalize_request,
    normalize_timeframe,
)

UTC = dt.timezone.utc
JAN_1 = dt.datetime(2025, 1, 1, tzinfo=UTC)
JAN_31 = dt.datetime(2025, 1, 31, tzinfo=UTC)


class _StubExtractor:
    def __init__(self, rewritten: str, time_range: TimeRange | None):
        self.rewritten = rewritten
        self.time_range = time_range
        self.calls: list[str] = []

    def extract(self, query: str):
        self.calls.append(query)
        return self.rewritten, self.time_range


def test_request_rejects_unknown_fields():
    with pytest.raises(ValidationError):
        SearchRequest(query_text="q", boost_recent=True)


def test_request_rejects_non_positive_limit():
    with pytest.raises(ValidationError):
        SearchRequest(query_text="q", limit=0)


def test_request_cleans_tags():
    request = SearchRequest(query_text="q", tags=[" ml ", "ml", "", "ai"])
    assert request.tags == ["ml", "ai"]


def test_time_range_rejects_inverted_bounds():
    with pytest.raises(ValidationError):
        TimeRange(start=JAN_31, end=JAN_1)


def test_time_range_for_day_covers_whole_day():
    window = TimeRange.for_day(dt.date(2025, 1, 15))
    assert window.contains(dt.datetime(2025, 1, 15, 0, 0))
    assert window.contains(dt.datetime(2025, 1, 15, 23, 59, 59))
    assert not window.contains(dt.datetime(2025, 1, 16, 0, 0))


def test_normalize_timeframe_none_means_no_filter():
    assert normalize_timeframe(None, "q") == ("q", ())


def test_normalize_timeframe_passes_range_through():
    window = TimeRange(start=JAN_1, end=JAN_31)
    assert normalize_timeframe(window, "q") == ("q", (window,))


def test_normalize_timeframe_datetime_is_its_day():
    query, (window,) = normalize_timeframe(dt.datetime(2025, 1, 15, 13, 30, tzinfo=UTC), "q")
    assert query == "q"
    assert window.start == dt.datetime(2025, 1, 15, tzinfo=UTC)
    assert window.end.date() == dt.date(2025, 1, 15)


def test_normalize_timeframe_auto_requires_extractor():
    with pytest.raises(ConfigurationError):
        normalize_timeframe("auto", "notes from last week")


def test_normalize_timeframe_auto_rewrites_query():
    window = TimeRange(start=JAN_1, end=JAN_31)
    extractor = _StubExtractor("notes", window)

    assert normalize_timeframe("auto", "notes from january", extractor) == ("notes", (window,))
    assert extractor.calls == ["notes from january"]


def test_normalize_timeframe_auto_keeps_query_when_extractor_empties_it():
    extractor = _StubExtractor("  ", None)
    assert normalize_timeframe("auto", "yesterday", extractor) == ("yesterday", ())


def test_normalize_timeframe_rejects_unknown_type():
    with pytest.raises(TimeframeError):
        normalize_timeframe(42, "q")


def test_build_scope_normalises_filters():
    scope = build_scope(
        SearchFilters(document_type=" ", keywords=[" ai ", "ai", "ml"], content_kind=ContentKind.IMAGE)
    )
    assert scope == SearchScope(keywords=("ai", "ml"), content_kind=ContentKind.IMAGE)


def test_scope_admits_checks_every_filter():
    scope = SearchScope(
        document_type="pdf",
        keywords=("ai",),
        time_ranges=(TimeRange(start=JAN_1, end=JAN_31),),
        embedding_model="m1",
    )
    attrs = dict(
        document_type="pdf",
        keywords=["ai", "ml"],
        created_at=dt.datetime(2025, 1, 10, tzinfo=UTC),
        content_id=1,
        content_kind=ContentKind.TEXT,
        embedding_model="m1",
    )
    assert scope.admits(**attrs)
    assert not scope.admits(**{**attrs, "document_type": "text"})
    assert not scope.admits(**{**attrs, "keywords": ["ml"]})
    assert not scope.admits(**{**attrs, "created_at": dt.datetime(2025, 2, 1, tzinfo=UTC)})
    assert not scope.admits(**{**attrs, "embedding_model": "m2"})


def test_normalize_request_builds_shared_scope():
    request = SearchRequest(
        query_text="kafka",
        timeframe=dt.date(2025, 1, 15),
        filters=SearchFilters(document_type="pdf"),
    )
    normalized = normalize_request(request)

    assert normalized.query == "kafka"
    assert normalized.original_query == "kafka"
    assert normalized.scope.document_type == "pdf"
    assert normalized.scope.time_ranges == (TimeRange.for_day(dt.date(2025, 1, 15)),)
    assert normalized.extracted_timeframe is None


class _PhraseExtractor:
    """Only understands expressions phrased as a request."""

    def __init__(self, time_range: TimeRange):
        self.time_range = time_range
        self.calls: list[str] = []

    def extract(self, query: str):
        self.calls.append(query)
        if query.startswith("show me "):
            return "", self.time_range
        return query, None


def test_normalize_timeframe_list_keeps_every_window():
    first = TimeRange(start=JAN_1, end=dt.datetime(2025, 1, 7, tzinfo=UTC))
    query, windows = normalize_timeframe([first, dt.date(2025, 3, 1)], "q")

    assert query == "q"
    assert windows == (first, TimeRange.for_day(dt.date(2025, 3, 1)))


def test_scope_with_several_windows_admits_any_of_them():
    _, windows = normalize_timeframe(
        [TimeRange(start=JAN_1, end=dt.datetime(2025, 1, 7, tzinfo=UTC)), dt.date(2025, 3, 1)],
        "q",
    )
    scope = SearchScope(time_ranges=windows)
    attrs = dict(
        document_type=None,
        keywords=[],
        content_id=None,
        content_kind=None,
        embedding_model=None,
    )
    assert scope.admits(created_at=dt.datetime(2025, 1, 5), **attrs)
    assert scope.admits(created_at=dt.datetime(2025, 3, 1, 12, 0), **attrs)
    assert not scope.admits(created_at=dt.datetime(2025, 2, 10), **attrs)
    assert not scope.admits(created_at=None, **attrs)


def test_normalize_timeframe_rejects_empty_list():
    with pytest.raises(TimeframeError):
        normalize_timeframe([], "q")


def test_normalize_timeframe_rejects_unknown_list_item():
    with pytest.raises(TimeframeError):
        normalize_timeframe([42], "q")


def test_time_expression_is_resolved_by_extractor():
    window = TimeRange(start=JAN_1, end=JAN_31)
    extractor = _StubExtractor("", window)

    assert normalize_timeframe("january", "kafka notes", extractor) == ("kafka notes", (window,))
    assert extractor.calls == ["january"]


def test_time_expression_is_retried_as_a_request():
    window = TimeRange(start=JAN_1, end=JAN_31)
    extractor = _PhraseExtractor(window)

    assert normalize_timeframe("last month", "q", extractor) == ("q", (window,))
    assert extractor.calls == ["last month", "show me last month"]


def test_unparseable_time_expression_adds_no_window():
    extractor = _StubExtractor("gibberish", None)

    assert normalize_timeframe("gibberish", "q", extractor) == ("q", ())
    assert extractor.calls == ["gibberish", "show me gibberish"]


def test_list_mixes_ranges_and_expressions():
    window = TimeRange(start=JAN_1, end=JAN_31)
    extractor = _PhraseExtractor(window)
    day = dt.date(2025, 3, 1)

    _, windows = normalize_timeframe([day, "january"], "q", extractor)

    assert windows == (TimeRange.for_day(day), window)


def test_time_expression_requires_extractor():
    with pytest.raises(ConfigurationError):
        normalize_timeframe("last week", "q")


def test_request_accepts_list_of_windows_and_expressions():
    request = SearchRequest(
        query_text="q",
        timeframe=[{"start": JAN_1, "end": JAN_31}, "last week"],
    )
    assert request.timeframe == [TimeRange(start=JAN_1, end=JAN_31), "last week"]
