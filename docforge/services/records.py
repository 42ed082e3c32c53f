"""Domain records shared by the analyzer, planner, cache store and pipeline.

These are plain dataclasses rather than ORM models: the pipeline works on
detached working copies and only the cache store translates them to rows.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Union

from ..exceptions import ValidationError
from .fingerprint import hash_content

INDEX_UNIT_KEY = "index"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_repo_id(repo_url: str) -> str:
    """Normalize a repository URL into a cache key.

    Case-folds, strips the scheme, a leading ``www.``, a trailing ``.git``
    and trailing slashes::

        https://GitHub.com/Owner/Repo.git/  ->  github.com/owner/repo

    Raises:
        ValidationError: If the identifier is empty after normalization.
    """
    if not isinstance(repo_url, str) or not repo_url.strip():
        raise ValidationError("Repository identifier is required", field="repo_url")

    repo_id = repo_url.strip().casefold()
    repo_id = re.sub(r"^[a-z][a-z0-9+.\-]*://", "", repo_id)
    repo_id = re.sub(r"^[^@/]+@", "", repo_id)  # user@host
    if repo_id.startswith("www."):
        repo_id = repo_id[4:]
    repo_id = repo_id.rstrip("/")
    if repo_id.endswith(".git"):
        repo_id = repo_id[:-4].rstrip("/")

    if not repo_id:
        raise ValidationError(f"Invalid repository identifier: {repo_url!r}", field="repo_url")
    return repo_id


@dataclass(frozen=True)
class SourceFile:
    """One ``(path, content)`` pair supplied by a repository file source."""

    path: str
    content: Union[str, bytes]

    @property
    def data(self) -> bytes:
        if isinstance(self.content, bytes):
            return self.content
        return self.content.encode("utf-8")

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return self.content.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class FileRecord:
    path: str
    content_hash: str
    size: int
    last_seen_at: datetime


@dataclass(frozen=True)
class Snapshot:
    """All file records observed for a repository at one point in time."""

    records: tuple[FileRecord, ...]
    captured_at: datetime

    def __post_init__(self):
        seen: set[str] = set()
        for record in self.records:
            if record.path in seen:
                raise ValueError(f"Duplicate path in snapshot: {record.path}")
            seen.add(record.path)

    def hashes(self) -> dict[str, str]:
        return {r.path: r.content_hash for r in self.records}


@dataclass(frozen=True)
class Unit:
    """One independently cached work product (a chapter, or the assembled index)."""

    key: str
    title: str
    content: str
    source_inputs_hash: str
    input_paths: tuple[str, ...]
    generated_at: datetime

    @property
    def content_hash(self) -> str:
        return hash_content(self.content)


@dataclass(frozen=True)
class DependencyEdge:
    """``dependent`` was generated from, and must be refreshed with, ``dependency``."""

    dependent: str
    dependency: str


@dataclass
class RepoCacheEntry:
    """The persisted state for one repository.

    ``structure`` carries the discovered abstractions and relationships so
    that partial runs can skip structural discovery; ``metadata`` records the
    backend identity and parameters that produced the units.
    """

    repo_id: str
    repo_url: str
    snapshot: Snapshot
    units: dict[str, Unit] = field(default_factory=dict)
    unit_order: tuple[str, ...] = ()
    edges: tuple[DependencyEdge, ...] = ()
    structure: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def expected_unit_keys(self) -> list[str]:
        return list(self.unit_order) + [INDEX_UNIT_KEY]

    def missing_units(self) -> list[str]:
        return [key for key in self.expected_unit_keys() if key not in self.units]


@dataclass(frozen=True)
class ChangeAnalysis:
    added: tuple[str, ...]
    removed: tuple[str, ...]
    modified: tuple[str, ...]
    unchanged: tuple[str, ...]
    change_percentage: float

    @property
    def changed_paths(self) -> set[str]:
        return set(self.added) | set(self.removed) | set(self.modified)

    @property
    def has_structural_change(self) -> bool:
        return bool(self.added or self.removed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": list(self.added),
            "removed": list(self.removed),
            "modified": list(self.modified),
            "unchanged": list(self.unchanged),
            "change_percentage": self.change_percentage,
        }


class RegenerationMode(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    PARTIAL_REIDENTIFY = "partial_reidentify"
    SKIP = "skip"


@dataclass(frozen=True)
class RegenerationPlan:
    mode: RegenerationMode
    units_to_regenerate: tuple[str, ...]
    reidentify_top_level: bool
    reason: str

    def regenerates(self, key: str) -> bool:
        return self.mode == RegenerationMode.FULL or key in self.units_to_regenerate

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "units_to_regenerate": list(self.units_to_regenerate),
            "reidentify_top_level": self.reidentify_top_level,
            "reason": self.reason,
        }


def snapshot_from(records: Iterable[FileRecord], captured_at: Optional[datetime] = None) -> Snapshot:
    return Snapshot(records=tuple(records), captured_at=captured_at or utcnow())
