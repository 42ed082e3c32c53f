"""Diff an incoming file set against the last persisted snapshot."""

import logging
from datetime import datetime
from typing import Optional, Sequence

from .fingerprint import fingerprint_files
from .records import ChangeAnalysis, FileRecord, Snapshot, SourceFile, utcnow

logger = logging.getLogger(__name__)


def analyze_changes(
    files: Sequence[SourceFile],
    prior: Optional[Snapshot],
    seen_at: Optional[datetime] = None,
) -> ChangeAnalysis:
    """Fingerprint *files* and classify them against *prior*."""
    return analyze_records(fingerprint_files(files, seen_at or utcnow()), prior)


def analyze_records(
    current: Sequence[FileRecord],
    prior: Optional[Snapshot],
) -> ChangeAnalysis:
    """Classify every path into exactly one of added/removed/modified/unchanged.

    ``change_percentage`` is the share of changed paths over the union of
    prior and current paths, rounded to one decimal. A first run (no prior
    snapshot) reports every file as added and 100.0 percent.

    Raises:
        ValueError: If *current* contains the same path twice.
    """
    current_hashes: dict[str, str] = {}
    for record in current:
        if record.path in current_hashes:
            raise ValueError(f"Duplicate path in file set: {record.path}")
        current_hashes[record.path] = record.content_hash

    if prior is None:
        return ChangeAnalysis(
            added=tuple(sorted(current_hashes)),
            removed=(),
            modified=(),
            unchanged=(),
            change_percentage=100.0,
        )

    prior_hashes = prior.hashes()
    added, modified, unchanged = [], [], []
    for path, content_hash in current_hashes.items():
        previous = prior_hashes.get(path)
        if previous is None:
            added.append(path)
        elif previous != content_hash:
            modified.append(path)
        else:
            unchanged.append(path)
    removed = [path for path in prior_hashes if path not in current_hashes]

    changed = len(added) + len(removed) + len(modified)
    total = len(set(prior_hashes) | set(current_hashes))
    percentage = round(changed / max(1, total) * 100, 1)

    logger.debug(
        "Change analysis: %d added, %d removed, %d modified, %d unchanged (%.1f%%)",
        len(added), len(removed), len(modified), len(unchanged), percentage,
    )

    return ChangeAnalysis(
        added=tuple(sorted(added)),
        removed=tuple(sorted(removed)),
        modified=tuple(sorted(modified)),
        unchanged=tuple(sorted(unchanged)),
        change_percentage=percentage,
    )
