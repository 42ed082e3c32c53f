"""Content fingerprinting.

Every file is identified by the sha256 of its exact bytes; a set of files is
identified by the sha256 of its sorted ``path:hash`` lines, so enumeration
order never changes the aggregate. All functions here are pure.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Sequence, Union

if TYPE_CHECKING:
    from .records import FileRecord, SourceFile


def hash_content(content: Union[bytes, str]) -> str:
    """Return the sha256 hex digest of *content* (``str`` is UTF-8 encoded)."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def hash_set(records: Iterable["FileRecord"]) -> str:
    """Order-independent fingerprint of a set of file records."""
    lines = sorted(f"{r.path}:{r.content_hash}" for r in records)
    return hash_content("\n".join(lines))


def hash_parts(*parts: str) -> str:
    """Fingerprint an ordered sequence of strings (order matters)."""
    digest = hashlib.sha256()
    for part in parts:
        encoded = part.encode("utf-8")
        digest.update(len(encoded).to_bytes(8, "big"))
        digest.update(encoded)
    return digest.hexdigest()


def fingerprint_files(files: Sequence["SourceFile"], seen_at: datetime) -> list["FileRecord"]:
    """Hash each source file into a :class:`FileRecord`, preserving input order."""
    from .records import FileRecord

    records = []
    for f in files:
        data = f.data
        records.append(FileRecord(
            path=f.path,
            content_hash=hash_content(data),
            size=len(data),
            last_seen_at=seen_at,
        ))
    return records
