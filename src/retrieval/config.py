"""
Configuration for hybrid retrieval.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

project_root = Path(__file__).resolve().parents[2]
env_file = project_root / ".env"
if env_file.exists():
    load_dotenv(env_file)

SEMANTIC = "semantic"
LEXICAL = "lexical"
TAGS = "tags"

# Dispatch order when channels run sequentially.
CHANNELS = (SEMANTIC, LEXICAL, TAGS)

DEFAULT_RRF_K = 60
DEFAULT_TRIGRAM_THRESHOLD = 0.10
DEFAULT_LIMIT = 20
DEFAULT_CANDIDATE_LIMIT = 100
MAX_HYBRID_LIMIT = 1000


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    if raw.strip().lower() in ("none", "off"):
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


@dataclass
class SearchConfig:
    """Configuration for hybrid search."""

    rrf_k: int = DEFAULT_RRF_K
    semantic_weight: float = 1.0
    lexical_weight: float = 1.0
    tag_weight: float = 1.0
    trigram_threshold: float = DEFAULT_TRIGRAM_THRESHOLD
    similarity_threshold: float = 0.0
    max_limit: int = MAX_HYBRID_LIMIT
    channel_timeout: Optional[float] = 10.0

    @property
    def weights(self) -> Dict[str, float]:
        return {
            SEMANTIC: self.semantic_weight,
            LEXICAL: self.lexical_weight,
            TAGS: self.tag_weight,
        }

    def validate(self) -> "SearchConfig":
        """Raise ConfigurationError if any setting is unusable."""
        for channel, weight in self.weights.items():
            if not isinstance(weight, (int, float)) or not math.isfinite(weight) or weight < 0:
                raise ConfigurationError(
                    f"{channel} weight must be a finite non-negative number, got {weight!r}"
                )
        if not any(self.weights.values()):
            raise ConfigurationError("at least one channel weight must be positive")
        if self.rrf_k < 0:
            raise ConfigurationError(f"rrf_k must be >= 0, got {self.rrf_k}")
        if not 0.0 <= self.trigram_threshold <= 1.0:
            raise ConfigurationError(
                f"trigram_threshold must be within [0, 1], got {self.trigram_threshold}"
            )
        if not -1.0 <= self.similarity_threshold <= 1.0:
            raise ConfigurationError(
                f"similarity_threshold must be within [-1, 1], got {self.similarity_threshold}"
            )
        if self.max_limit < 1:
            raise ConfigurationError(f"max_limit must be >= 1, got {self.max_limit}")
        if self.channel_timeout is not None and self.channel_timeout <= 0:
            raise ConfigurationError(
                f"channel_timeout must be positive or None, got {self.channel_timeout}"
            )
        return self

    @classmethod
    def from_env(cls) -> "SearchConfig":
        """Build a validated config from RETRIEVAL_* environment variables."""
        config = cls(
            rrf_k=_env_int("RETRIEVAL_RRF_K", DEFAULT_RRF_K),
            semantic_weight=_env_float("RETRIEVAL_SEMANTIC_WEIGHT", 1.0),
            lexical_weight=_env_float("RETRIEVAL_LEXICAL_WEIGHT", 1.0),
            tag_weight=_env_float("RETRIEVAL_TAG_WEIGHT", 1.0),
            trigram_threshold=_env_float("RETRIEVAL_TRIGRAM_THRESHOLD", DEFAULT_TRIGRAM_THRESHOLD),
            similarity_threshold=_env_float("RETRIEVAL_SIMILARITY_THRESHOLD", 0.0),
            max_limit=_env_int("RETRIEVAL_MAX_LIMIT", MAX_HYBRID_LIMIT),
            channel_timeout=_env_float("RETRIEVAL_CHANNEL_TIMEOUT", 10.0),
        )
        return config.validate()
