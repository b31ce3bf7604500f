"""
Value types shared across the retrieval core.

``SearchRequest`` and its parts are pydantic models so that unrecognised
fields are rejected where a request enters the system. Everything produced
during a search is a plain dataclass.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import DEFAULT_CANDIDATE_LIMIT, DEFAULT_LIMIT
from .errors import TimeframeError

PassageId = Union[int, str]

UNKNOWN = "Unknown"


class ContentKind(str, Enum):
    """Media kind the embedded text was derived from."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"


class TimeRange(BaseModel):
    """Inclusive time window."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    start: dt.datetime
    end: dt.datetime

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.end < self.start:
            raise TimeframeError(f"timeframe end {self.end} is before start {self.start}")
        return self

    @classmethod
    def for_day(cls, day: dt.date) -> "TimeRange":
        """The whole calendar day containing ``day``."""
        tz = day.tzinfo if isinstance(day, dt.datetime) else None
        start = dt.datetime(day.year, day.month, day.day, tzinfo=tz)
        return cls(start=start, end=start + dt.timedelta(days=1) - dt.timedelta(microseconds=1))

    def contains(self, moment: Optional[dt.datetime]) -> bool:
        if moment is None:
            return False
        start, end = self.start, self.end
        if (moment.tzinfo is None) != (start.tzinfo is None):
            moment = _as_utc(moment)
            start, end = _as_utc(start), _as_utc(end)
        return start <= moment <= end


def _as_utc(moment: dt.datetime) -> dt.datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=dt.timezone.utc)
    return moment.astimezone(dt.timezone.utc)


class SearchFilters(BaseModel):
    """Filters applied identically to every retrieval channel."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    document_type: Optional[str] = None
    # Any-of: a passage matches if its document shares at least one keyword.
    keywords: Optional[List[str]] = None
    content_id: Optional[PassageId] = None
    content_kind: Optional[ContentKind] = None
    embedding_model: Optional[str] = None


class SearchRequest(BaseModel):
    """A single hybrid search call."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    query_text: str
    # A list holds several windows, any of which admits a passage; strings
    # other than "auto" are time expressions such as "last week".
    timeframe: Union[
        Literal["auto"],
        TimeRange,
        dt.datetime,
        dt.date,
        List[Union[TimeRange, dt.datetime, dt.date, str]],
        str,
        None,
    ] = None
    tags: Optional[List[str]] = None
    filters: SearchFilters = Field(default_factory=SearchFilters)
    limit: int = Field(default=DEFAULT_LIMIT, ge=1)
    candidate_limit: int = Field(default=DEFAULT_CANDIDATE_LIMIT, ge=1)
    run_channels_concurrently: bool = True

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, tags: Optional[List[str]]) -> Optional[List[str]]:
        if tags is None:
            return None
        cleaned: List[str] = []
        for tag in tags:
            tag = tag.strip()
            if tag and tag not in cleaned:
                cleaned.append(tag)
        return cleaned


@dataclass
class CandidateRecord:
    """One channel's candidate; ``channel_score`` orders the channel's list."""

    id: PassageId
    content: str
    channel_score: float
    channel_name: str
    document_id: Optional[PassageId] = None
    extras: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FusedResult:
    """A passage after Reciprocal Rank Fusion."""

    id: PassageId
    content: str
    rrf_score: float
    per_channel_scores: Dict[str, float] = field(default_factory=dict)
    per_channel_ranks: Dict[str, int] = field(default_factory=dict)
    sources: List[str] = field(default_factory=list)
    matched_tags: List[str] = field(default_factory=list)
    document_id: Optional[PassageId] = None
    document_title: str = UNKNOWN
    document_location: str = UNKNOWN


class ChannelStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    SKIPPED = "skipped"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class ChannelDiagnostics:
    """How one channel behaved during a search."""

    channel: str
    status: ChannelStatus
    candidate_count: int = 0
    elapsed_ms: float = 0.0
    error: Optional[str] = None
    fallback: Optional[str] = None
    highest_similarity: Optional[float] = None

    @property
    def failed(self) -> bool:
        return self.status in (ChannelStatus.FAILED, ChannelStatus.TIMED_OUT)


@dataclass
class SearchResponse:
    """Result envelope returned by ``HybridSearcher.search``."""

    query: str
    results: List[FusedResult]
    channel_diagnostics: Dict[str, ChannelDiagnostics] = field(default_factory=dict)
    execution_time_ms: float = 0.0
    error_message: Optional[str] = None
    extracted_timeframe: Optional[TimeRange] = None
    search_type: str = "hybrid"

    @property
    def total_results(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> bool:
        return self.error_message is None

    @classmethod
    def failure(
        cls,
        query: str,
        message: str,
        *,
        channel_diagnostics: Optional[Dict[str, ChannelDiagnostics]] = None,
        execution_time_ms: float = 0.0,
    ) -> "SearchResponse":
        return cls(
            query=query,
            results=[],
            channel_diagnostics=channel_diagnostics or {},
            execution_time_ms=execution_time_ms,
            error_message=message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "search_type": self.search_type,
            "results": [asdict(r) for r in self.results],
            "total_results": self.total_results,
            "channel_diagnostics": {
                name: {**asdict(diag), "status": diag.status.value}
                for name, diag in self.channel_diagnostics.items()
            },
            "execution_time_ms": self.execution_time_ms,
            "extracted_timeframe": (
                self.extracted_timeframe.model_dump(mode="json") if self.extracted_timeframe else None
            ),
            "error_message": self.error_message,
        }
