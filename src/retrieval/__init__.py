"""
Hybrid retrieval module.

Provides the retrieval layer for RAG over embedded passages:
- Boundary-aware chunking for the embedding pipeline
- Semantic retrieval blended with passage usage
- Full-text retrieval with trigram and substring fallbacks
- Hierarchical tag retrieval
- Hybrid search with weighted RRF fusion
"""

from .chunker import Chunk, chunk, chunk_by_structure, chunk_code
from .config import SearchConfig
from .errors import (
    ChannelUnavailable,
    ConfigurationError,
    EmbeddingUnavailable,
    FusionFailure,
    RetrievalError,
    TimeframeError,
)
from .filters import (
    SearchScope,
    build_scope,
    normalize_request,
    normalize_timeframe,
    requires_extractor,
)
from .hybrid import HybridSearcher
from .indexing import index_text
from .lexical import LexicalCandidateGenerator
from .memory_store import InMemoryStore
from .rrf_merger import rrf_merge
from .semantic import SemanticCandidateGenerator, usage_score
from .tags import Tag, TagCandidateGenerator, expand_tag_hierarchy
from .types import (
    CandidateRecord,
    ChannelDiagnostics,
    ChannelStatus,
    ContentKind,
    FusedResult,
    SearchFilters,
    SearchRequest,
    SearchResponse,
    TimeRange,
)

__all__ = [
    "Chunk",
    "chunk",
    "chunk_by_structure",
    "chunk_code",
    "SearchConfig",
    "ChannelUnavailable",
    "ConfigurationError",
    "EmbeddingUnavailable",
    "FusionFailure",
    "RetrievalError",
    "TimeframeError",
    "SearchScope",
    "build_scope",
    "normalize_request",
    "normalize_timeframe",
    "requires_extractor",
    "HybridSearcher",
    "index_text",
    "LexicalCandidateGenerator",
    "InMemoryStore",
    "rrf_merge",
    "SemanticCandidateGenerator",
    "usage_score",
    "Tag",
    "TagCandidateGenerator",
    "expand_tag_hierarchy",
    "CandidateRecord",
    "ChannelDiagnostics",
    "ChannelStatus",
    "ContentKind",
    "FusedResult",
    "SearchFilters",
    "SearchRequest",
    "SearchResponse",
    "TimeRange",
]
