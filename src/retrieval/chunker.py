"""
Boundary-aware text chunking for the embedding pipeline.

Text is cut into overlapping windows of at most ``chunk_size`` characters.
Each cut prefers, in order, a paragraph break, a sentence end and a word
boundary, and falls back to a hard cut when none lies far enough into the
window.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from .errors import ConfigurationError

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP = 200

# Minimum distance into the window (as a fraction of chunk_size) for a break.
SENTENCE_BREAK_MIN_FRACTION = 0.5
WORD_BREAK_MIN_FRACTION = 0.3

SENTENCE_END_RE = re.compile(r"[.!?](?:\s+|$)")
WHITESPACE_RE = re.compile(r"\s")
PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
CODE_BLOCK_START_RE = re.compile(r"^\s*(def|class|function|const|let|var)\s")


@dataclass(frozen=True)
class Chunk:
    """A trimmed slice of the source text; ``text == source[start_offset:end_offset]``."""

    text: str
    start_offset: int
    end_offset: int
    index: int


def _validate(chunk_size: int, chunk_overlap: int) -> int:
    if chunk_size is None or chunk_size <= 0:
        raise ConfigurationError(f"chunk_size must be a positive integer, got {chunk_size!r}")
    if chunk_overlap is None or chunk_overlap < 0:
        raise ConfigurationError(f"chunk_overlap must be >= 0, got {chunk_overlap!r}")
    if chunk_overlap >= chunk_size:
        chunk_overlap = max(chunk_size - 1, 0)
    return chunk_overlap


def _trimmed(text: str, start: int, end: int, index: int) -> Chunk | None:
    piece = text[start:end]
    stripped = piece.strip()
    if not stripped:
        return None
    lead = len(piece) - len(piece.lstrip())
    begin = start + lead
    return Chunk(text=stripped, start_offset=begin, end_offset=begin + len(stripped), index=index)


def find_break_point(window: str, chunk_size: int) -> int:
    """
    Return the offset within ``window`` where the chunk should end.

    Args:
        window: Text from the chunk start, at most ``chunk_size`` characters.
        chunk_size: Configured chunk size.

    Returns:
        Offset in ``(0, chunk_size]``.
    """
    sentence_min = chunk_size * SENTENCE_BREAK_MIN_FRACTION

    paragraph = window.rfind("\n\n")
    if paragraph != -1 and paragraph > sentence_min:
        return paragraph + 2

    sentence_ends = [m.end() for m in SENTENCE_END_RE.finditer(window) if m.end() > sentence_min]
    if sentence_ends:
        return max(sentence_ends)

    spaces = [m.start() for m in WHITESPACE_RE.finditer(window)]
    if spaces and spaces[-1] > chunk_size * WORD_BREAK_MIN_FRACTION:
        return spaces[-1] + 1

    return chunk_size


def chunk(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[Chunk]:
    """
    Split ``text`` into overlapping, boundary-aware chunks.

    An overlap that is not smaller than ``chunk_size`` is clamped to
    ``chunk_size - 1``. Every iteration advances the window start by at
    least one character, so the loop always terminates.

    Raises:
        ConfigurationError: If ``chunk_size`` is not positive or
            ``chunk_overlap`` is negative.
    """
    chunk_overlap = _validate(chunk_size, chunk_overlap)
    if not text:
        return []

    if len(text) <= chunk_size:
        single = _trimmed(text, 0, len(text), 0)
        return [single] if single else []

    chunks: List[Chunk] = []
    start = 0
    while start < len(text):
        end = start + chunk_size
        if end >= len(text):
            last = _trimmed(text, start, len(text), len(chunks))
            if last:
                chunks.append(last)
            break

        break_at = start + find_break_point(text[start:end], chunk_size)
        piece = _trimmed(text, start, break_at, len(chunks))
        if piece:
            chunks.append(piece)

        next_start = max(0, break_at - chunk_overlap)
        if next_start <= start:
            next_start = start + 1
        start = next_start

    return chunks


def chunk_by_structure(text: str, max_chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    """
    Pack whole paragraphs into chunks of at most ``max_chunk_size`` characters.

    Oversize paragraphs are split into sentences, and oversize sentences into
    words. Chunks carry no offsets because paragraphs are re-joined.
    """
    if max_chunk_size <= 0:
        raise ConfigurationError(f"max_chunk_size must be a positive integer, got {max_chunk_size!r}")

    chunks: List[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current.strip():
            chunks.append(current.strip())
        current = ""

    def append(piece: str, sep: str) -> None:
        nonlocal current
        if current and len(current) + len(piece) + len(sep) > max_chunk_size:
            flush()
        current = f"{current}{sep}{piece}" if current else piece

    for paragraph in PARAGRAPH_SPLIT_RE.split(text or ""):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if len(paragraph) <= max_chunk_size:
            append(paragraph, "\n\n")
            continue
        for sentence in SENTENCE_SPLIT_RE.split(paragraph):
            sentence = sentence.strip()
            if not sentence:
                continue
            if len(sentence) <= max_chunk_size:
                append(sentence, " ")
                continue
            for word in sentence.split():
                append(word, " ")

    flush()
    return chunks


def chunk_code(text: str, max_chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    """
    Split source code into chunks of whole logical blocks.

    A block starts at a ``def``/``class``/``function``/``const``/``let``/``var``
    line, or at the first non-blank line indented no deeper than the line
    that opened the current block. Blocks are packed into chunks of at most
    ``max_chunk_size`` characters; a block larger than that becomes a chunk
    of its own and is not split.
    """
    if max_chunk_size <= 0:
        raise ConfigurationError(f"max_chunk_size must be a positive integer, got {max_chunk_size!r}")

    chunks: List[str] = []
    current = ""
    block: List[str] = []
    block_indent: int | None = None

    def add_block() -> None:
        nonlocal current
        if not block:
            return
        block_text = "\n".join(block)
        if current and len(current) + len(block_text) + 1 > max_chunk_size:
            chunks.append(current.strip())
            current = ""
        current = f"{current}\n{block_text}" if current else block_text

    for line in (text or "").split("\n"):
        indent = len(line) - len(line.lstrip())
        dedented = block_indent is not None and indent <= block_indent and line.strip()
        if CODE_BLOCK_START_RE.match(line) or dedented:
            add_block()
            block = [line]
            block_indent = indent
        else:
            block.append(line)

    add_block()
    if current.strip():
        chunks.append(current.strip())
    return [c for c in chunks if c]
