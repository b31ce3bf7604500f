"""
Filter and timeframe normalisation shared by all retrieval channels.

Every channel receives the same ``SearchScope`` so that a passage excluded
from one channel by filters is excluded from all of them.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

from .errors import ConfigurationError, TimeframeError
from .stores import TimeframeExtractor
from .types import ContentKind, PassageId, SearchFilters, SearchRequest, TimeRange

logger = logging.getLogger(__name__)

AUTO = "auto"
# Retried when the extractor finds no time expression in a bare phrase.
EXPRESSION_RETRY_PREFIX = "show me "


@dataclass(frozen=True)
class SearchScope:
    """Normalised filters and time windows for one search."""

    document_type: Optional[str] = None
    keywords: Tuple[str, ...] = ()
    # OR'd together; empty means no time filter.
    time_ranges: Tuple[TimeRange, ...] = ()
    content_id: Optional[PassageId] = None
    content_kind: Optional[ContentKind] = None
    embedding_model: Optional[str] = None

    def admits(
        self,
        *,
        document_type: Optional[str],
        keywords: Iterable[str],
        created_at: Optional[dt.datetime],
        content_id: Optional[PassageId],
        content_kind: Optional[ContentKind],
        embedding_model: Optional[str],
    ) -> bool:
        """Whether a passage with these attributes passes the scope."""
        if self.document_type is not None and document_type != self.document_type:
            return False
        if self.keywords and not set(self.keywords).intersection(keywords):
            return False
        if self.time_ranges and not any(r.contains(created_at) for r in self.time_ranges):
            return False
        if self.content_id is not None and content_id != self.content_id:
            return False
        if self.content_kind is not None and content_kind != self.content_kind:
            return False
        if self.embedding_model is not None and embedding_model != self.embedding_model:
            return False
        return True


@dataclass(frozen=True)
class NormalizedQuery:
    """Query text and scope handed to every channel."""

    query: str
    original_query: str
    scope: SearchScope
    extracted_timeframe: Optional[TimeRange] = None


def _clean_keywords(keywords: Optional[Iterable[str]]) -> Tuple[str, ...]:
    cleaned: list[str] = []
    for keyword in keywords or ():
        keyword = str(keyword).strip()
        if keyword and keyword not in cleaned:
            cleaned.append(keyword)
    return tuple(cleaned)


def build_scope(filters: Optional[SearchFilters], time_ranges: Sequence[TimeRange] = ()) -> SearchScope:
    """Turn request filters plus resolved time windows into a ``SearchScope``."""
    filters = filters or SearchFilters()
    document_type = (filters.document_type or "").strip() or None
    return SearchScope(
        document_type=document_type,
        keywords=_clean_keywords(filters.keywords),
        time_ranges=tuple(time_ranges),
        content_id=filters.content_id,
        content_kind=filters.content_kind,
        embedding_model=filters.embedding_model,
    )


def requires_extractor(timeframe) -> bool:
    """Whether resolving ``timeframe`` calls the timeframe extractor."""
    if isinstance(timeframe, str):
        return True
    return isinstance(timeframe, (list, tuple)) and any(isinstance(item, str) for item in timeframe)


def _checked(time_range) -> Optional[TimeRange]:
    if time_range is not None and not isinstance(time_range, TimeRange):
        raise TimeframeError(f"extractor returned {type(time_range).__name__}, expected TimeRange")
    return time_range


def _parse_expression(expression: str, extractor: Optional[TimeframeExtractor]) -> Optional[TimeRange]:
    if not expression.strip():
        return None
    if extractor is None:
        raise ConfigurationError(f"timeframe {expression!r} requires a timeframe extractor")
    for text in (expression, EXPRESSION_RETRY_PREFIX + expression):
        _, time_range = extractor.extract(text)
        if _checked(time_range) is not None:
            return time_range
    logger.warning("Could not parse timeframe %r, searching without it", expression)
    return None


def _window(item, extractor: Optional[TimeframeExtractor]) -> Optional[TimeRange]:
    if isinstance(item, TimeRange):
        return item
    if isinstance(item, dt.date):
        return TimeRange.for_day(item)
    if isinstance(item, str):
        return _parse_expression(item, extractor)
    raise TimeframeError(
        f"Unsupported timeframe type: {type(item).__name__}. "
        "Expected None, 'auto', TimeRange, date, datetime, a time expression or a list of these"
    )


def normalize_timeframe(
    timeframe,
    query: str,
    extractor: Optional[TimeframeExtractor] = None,
) -> Tuple[str, Tuple[TimeRange, ...]]:
    """
    Resolve a request timeframe.

    Args:
        timeframe: ``None``, ``"auto"``, a ``TimeRange``, a date/datetime
            (meaning the whole day), a time expression such as
            ``"last week"``, or a non-empty list of any of these except
            ``"auto"``.
        query: Query text; rewritten by the extractor in ``"auto"`` mode.
        extractor: Required for ``"auto"`` and time expressions.

    Returns:
        ``(query, time_ranges)``; an empty tuple means no filtering. An
        expression the extractor cannot parse adds no window.
    """
    if timeframe is None:
        return query, ()
    if timeframe == AUTO:
        if extractor is None:
            raise ConfigurationError("timeframe='auto' requires a timeframe extractor")
        if not query or not query.strip():
            return query, ()
        rewritten, time_range = extractor.extract(query)
        _checked(time_range)
        rewritten = rewritten if rewritten and rewritten.strip() else query
        if time_range is None:
            return rewritten, ()
        logger.debug("Extracted timeframe %s..%s from query", time_range.start, time_range.end)
        return rewritten, (time_range,)
    if isinstance(timeframe, (list, tuple)):
        if not timeframe:
            raise TimeframeError("timeframe list cannot be empty")
        windows = [_window(item, extractor) for item in timeframe]
        return query, tuple(w for w in windows if w is not None)
    window = _window(timeframe, extractor)
    return query, (() if window is None else (window,))


def normalize_request(
    request: SearchRequest,
    extractor: Optional[TimeframeExtractor] = None,
) -> NormalizedQuery:
    """Resolve the request's timeframe and filters into one ``NormalizedQuery``."""
    query, time_ranges = normalize_timeframe(request.timeframe, request.query_text, extractor)
    extracted = time_ranges[0] if request.timeframe == AUTO and time_ranges else None
    return NormalizedQuery(
        query=query,
        original_query=request.query_text,
        scope=build_scope(request.filters, time_ranges),
        extracted_timeframe=extracted,
    )
