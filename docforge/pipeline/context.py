"""Typed working context threaded through the pipeline stages.

Each stage is described by a :class:`StageDescriptor` that names the
context fields it reads and writes. Stages never assign to the context
themselves: they return a dict of updates which :meth:`PipelineContext.apply`
checks against the descriptor before applying, so a stage that writes an
undeclared field fails loudly instead of silently clobbering another
stage's output.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..services.records import (
    DependencyEdge,
    FileRecord,
    RegenerationPlan,
    RepoCacheEntry,
    SourceFile,
    Unit,
)

if TYPE_CHECKING:
    from .stages import StageRuntime

# Bumped whenever the shape of the cached ``structure`` or the context changes.
CONTEXT_VERSION = 1


@dataclass(frozen=True)
class Abstraction:
    key: str
    name: str
    description: str
    file_paths: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "files": list(self.file_paths),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Abstraction":
        return cls(
            key=data["key"],
            name=data["name"],
            description=data.get("description", ""),
            file_paths=tuple(data.get("files", ())),
        )


@dataclass(frozen=True)
class Relationship:
    source: str   # abstraction key that uses...
    target: str   # ...this abstraction key
    label: str

    def to_dict(self) -> dict[str, str]:
        return {"from": self.source, "to": self.target, "label": self.label}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Relationship":
        return cls(source=data["from"], target=data["to"], label=data.get("label", ""))


@dataclass(frozen=True)
class UnitFailure:
    key: str
    title: str
    error: str
    attempts: int

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "title": self.title, "error": self.error, "attempts": self.attempts}


@dataclass(frozen=True)
class ChapterOutput:
    key: str
    title: str
    filename: str
    content: str
    placeholder: bool = False


@dataclass(frozen=True)
class DocumentOutput:
    """The assembled write-up returned to the caller."""

    project_name: str
    index: str
    chapters: tuple[ChapterOutput, ...]

    def files(self) -> dict[str, str]:
        """Filename -> Markdown, ready to be written to disk."""
        result = {"index.md": self.index}
        for chapter in self.chapters:
            result[chapter.filename] = chapter.content
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_name": self.project_name,
            "index": self.index,
            "chapters": [
                {
                    "key": c.key,
                    "title": c.title,
                    "filename": c.filename,
                    "content": c.content,
                    "placeholder": c.placeholder,
                }
                for c in self.chapters
            ],
        }


@dataclass
class PipelineContext:
    """Working state owned by one run. Never shared between runs."""

    # Inputs (set by the executor, read-only for stages)
    repo_id: str
    repo_url: str
    project_name: str
    language: str
    documentation_mode: str
    files: tuple[SourceFile, ...]
    records: dict[str, FileRecord]
    plan: RegenerationPlan
    cached: Optional[RepoCacheEntry]

    # Stage outputs
    abstractions: tuple[Abstraction, ...] = ()
    summary: str = ""
    relationships: tuple[Relationship, ...] = ()
    unit_order: tuple[str, ...] = ()
    edges: tuple[DependencyEdge, ...] = ()
    units: dict[str, Unit] = field(default_factory=dict)
    regenerated: frozenset[str] = frozenset()
    failures: tuple[UnitFailure, ...] = ()
    index: Optional[Unit] = None
    output: Optional[DocumentOutput] = None

    version: int = CONTEXT_VERSION
    revision: int = 0

    def apply(self, stage: "StageDescriptor", updates: dict[str, Any]) -> None:
        """Apply a stage's updates after checking them against its declaration."""
        undeclared = set(updates) - stage.writes
        if undeclared:
            raise RuntimeError(
                f"Stage '{stage.name}' wrote undeclared context field(s): {sorted(undeclared)}"
            )
        for name, value in updates.items():
            setattr(self, name, value)
        self.revision += 1

    def structure(self) -> dict[str, Any]:
        """Serializable structural data persisted with the cache entry."""
        return {
            "version": self.version,
            "summary": self.summary,
            "abstractions": [a.to_dict() for a in self.abstractions],
            "relationships": [r.to_dict() for r in self.relationships],
        }


CONTEXT_FIELDS = frozenset(f.name for f in fields(PipelineContext))


@dataclass(frozen=True)
class StageDescriptor:
    """One pipeline stage: what it reads, what it writes, and how to run it."""

    name: str
    label: str
    reads: frozenset[str]
    writes: frozenset[str]
    run: Callable[[PipelineContext, "StageRuntime"], dict[str, Any]]
    progress_start: int
    progress_end: int

    def __post_init__(self):
        unknown = (self.reads | self.writes) - CONTEXT_FIELDS
        if unknown:
            raise ValueError(f"Stage '{self.name}' declares unknown context field(s): {sorted(unknown)}")
