"""
Exception hierarchy for the retrieval core.
"""

from __future__ import annotations


class RetrievalError(Exception):
    """Base class for retrieval errors."""


class ConfigurationError(RetrievalError, ValueError):
    """Invalid configuration; raised before any I/O happens."""


class TimeframeError(RetrievalError, ValueError):
    """A timeframe that cannot be turned into a time range."""


class ChannelUnavailable(RetrievalError):
    """A candidate generator's backing store capability failed."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel} channel unavailable: {message}")
        self.channel = channel


class EmbeddingUnavailable(RetrievalError):
    """The embedding gateway produced no vector."""


class FusionFailure(RetrievalError):
    """Hybrid search could not produce a ranking."""
