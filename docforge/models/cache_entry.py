"""Cache entry models: one row per repository plus its fingerprints, units and edges."""

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base


class RepoCacheRecord(Base):
    """Per-repository cache entry.

    Size, counts and timestamps are denormalized onto this row so that
    listing and eviction never load unit bodies.
    """

    __tablename__ = "repo_cache_entries"
    __table_args__ = (
        Index("ix_repo_cache_entries_last_accessed_at", "last_accessed_at"),
    )

    repo_id = Column(String(500), primary_key=True)
    repo_url = Column(Text, nullable=False)

    captured_at = Column(DateTime(timezone=True), nullable=False)
    last_accessed_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    size_bytes = Column(Integer, nullable=False, default=0)
    file_count = Column(Integer, nullable=False, default=0)
    unit_count = Column(Integer, nullable=False, default=0)

    unit_order = Column(JSON, nullable=False, default=list)
    structure = Column(JSON, nullable=False, default=dict)
    entry_metadata = Column("metadata", JSON, nullable=False, default=dict)

    # Set when a read finds the entry undecodable; maintenance evicts it.
    is_corrupt = Column(Boolean, nullable=False, default=False)

    files = relationship(
        "FileFingerprint", back_populates="entry",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="FileFingerprint.id",
    )
    units = relationship(
        "CachedUnit", back_populates="entry",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="CachedUnit.id",
    )
    dependencies = relationship(
        "UnitDependency", back_populates="entry",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="UnitDependency.id",
    )


class FileFingerprint(Base):
    """One file record of the repository's current snapshot."""

    __tablename__ = "file_fingerprints"
    __table_args__ = (
        Index("ix_file_fingerprints_repo_path", "repo_id", "path", unique=True),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo_id = Column(String(500), ForeignKey("repo_cache_entries.repo_id", ondelete="CASCADE"), nullable=False)
    path = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)
    size = Column(Integer, nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)

    entry = relationship("RepoCacheRecord", back_populates="files")


class CachedUnit(Base):
    """A generated unit. ``content_hash`` is re-verified on every read."""

    __tablename__ = "cached_units"
    __table_args__ = (
        Index("ix_cached_units_repo_key", "repo_id", "unit_key", unique=True),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo_id = Column(String(500), ForeignKey("repo_cache_entries.repo_id", ondelete="CASCADE"), nullable=False)
    unit_key = Column(String(255), nullable=False)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)
    source_inputs_hash = Column(String(64), nullable=False)
    input_paths = Column(JSON, nullable=False, default=list)
    generated_at = Column(DateTime(timezone=True), nullable=False)

    entry = relationship("RepoCacheRecord", back_populates="units")


class UnitDependency(Base):
    """Dependency edge between two units of the same repository."""

    __tablename__ = "unit_dependencies"
    __table_args__ = (
        Index("ix_unit_dependencies_repo_id", "repo_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo_id = Column(String(500), ForeignKey("repo_cache_entries.repo_id", ondelete="CASCADE"), nullable=False)
    dependent_key = Column(String(255), nullable=False)
    dependency_key = Column(String(255), nullable=False)

    entry = relationship("RepoCacheRecord", back_populates="dependencies")
