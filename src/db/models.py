from __future__ import annotations

import datetime as dt
import os
from typing import List, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

EMBEDDING_DIMENSIONS = int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # File path, URL or other source identifier
    location: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    document_type: Mapped[str] = mapped_column(String(32), nullable=False, default="text", index=True)
    keywords: Mapped[List[str]] = mapped_column(ARRAY(String(128)), nullable=False, default=list)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        index=True,
    )

    contents: Mapped[List["Content"]] = relationship(back_populates="document")


class Content(Base):
    """Text extracted from a document; ``kind`` records the original media."""

    __tablename__ = "contents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id"), nullable=False, index=True)
    # text, image, audio
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="text", index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding_model: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )

    document: Mapped["Document"] = relationship(back_populates="contents")
    embeddings: Mapped[List["Embedding"]] = relationship(back_populates="owner")


class Embedding(Base):
    """An embedded passage (one chunk of a content item)."""

    __tablename__ = "embeddings"
    __table_args__ = (
        UniqueConstraint("content_id", "chunk_index", name="uq_embedding_content_chunk"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    content_id: Mapped[int] = mapped_column(ForeignKey("contents.id"), nullable=False, index=True)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding_vector: Mapped[List[float]] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)

    # Only ever incremented, by the semantic channel.
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_returned_at: Mapped[Optional[dt.datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        index=True,
    )

    owner: Mapped["Content"] = relationship(back_populates="embeddings")
    tag_links: Mapped[List["EmbeddingTag"]] = relationship(back_populates="embedding")


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # Hierarchy is encoded in the name, e.g. "database:postgresql:indexes"
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    parent_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    depth: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    embedding_links: Mapped[List["EmbeddingTag"]] = relationship(back_populates="tag")


class EmbeddingTag(Base):
    __tablename__ = "embedding_tags"
    __table_args__ = (
        UniqueConstraint("embedding_id", "tag_id", name="uq_embedding_tag"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    embedding_id: Mapped[int] = mapped_column(ForeignKey("embeddings.id"), nullable=False, index=True)
    tag_id: Mapped[int] = mapped_column(ForeignKey("tags.id"), nullable=False, index=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    # manual or auto
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="auto")

    embedding: Mapped["Embedding"] = relationship(back_populates="tag_links")
    tag: Mapped["Tag"] = relationship(back_populates="embedding_links")
